"""Tests for the HTTP and WebSocket API."""

import pytest
from fastapi.testclient import TestClient

from agentflow.factory import create_app, get_app_state


def workflow_payload(nodes, edges, workflow_id="wf_api"):
    return {
        "id": workflow_id,
        "name": "API workflow",
        "nodes": [{"id": node_id, "type": node_type, "data": data} for node_id, node_type, data in nodes],
        "edges": [{"id": f"{source}->{target}", "source": source, "target": target} for source, target in edges],
    }


TOOL_WORKFLOW = workflow_payload(
    [
        ("start", "start", {}),
        ("tool", "tool", {"serverId": "filesystem", "toolName": "read_file"}),
        ("end", "end", {}),
    ],
    [("start", "tool"), ("tool", "end")]
)

HEADLESS_WORKFLOW = workflow_payload([("end", "end", {})], [])


@pytest.fixture
def client(test_config, agent):
    app = create_app(test_config, agent=agent)
    return TestClient(app)


def execute(client, workflow=TOOL_WORKFLOW, **extra):
    response = client.post("/api/v1/workflows/execute", json={"workflow": workflow, **extra})
    assert response.status_code == 200
    return response.json()


class TestWorkflowEndpoints:
    """Validate, execute and chat."""

    def test_validate_valid_workflow(self, client):
        response = client.post("/api/v1/workflows/validate", json=TOOL_WORKFLOW)

        assert response.status_code == 200
        assert response.json() == {"isValid": True, "errors": [], "warnings": []}

    def test_validate_reports_errors(self, client):
        response = client.post("/api/v1/workflows/validate", json=HEADLESS_WORKFLOW)

        body = response.json()
        assert body["isValid"] is False
        assert "Workflow must have a start node" in body["errors"]

    def test_execute_returns_camel_case_record(self, client):
        body = execute(client, input={"userQuery": "hi"})

        assert body["status"] == "completed"
        assert body["workflowId"] == "wf_api"
        assert body["executionPath"] == ["start", "tool", "end"]
        assert body["nodeResults"]["__initial"] == {"userQuery": "hi"}
        assert body["nodeResults"]["tool"]["llmResponse"] == "agent reply"

    def test_execute_invalid_graph_is_reported_on_record(self, client):
        body = execute(client, workflow=HEADLESS_WORKFLOW)

        assert body["status"] == "error"
        assert "start node" in body["error"]

    def test_execute_rejects_malformed_body(self, client):
        response = client.post("/api/v1/workflows/execute", json={"workflow": {"id": "wf"}})

        assert response.status_code == 422

    def test_execute_passes_options(self, client, agent):
        agent.process_message.side_effect = RuntimeError("agent down")

        body = execute(client, options={"continueOnError": True})

        assert body["status"] == "completed"
        tool = next(node for node in body["nodeExecutions"] if node["nodeId"] == "tool")
        assert tool["status"] == "error"

    def test_chat_returns_node_responses(self, client):
        response = client.post("/api/v1/workflows/chat", json={"workflow": TOOL_WORKFLOW, "query": "read it"})

        assert response.status_code == 200
        body = response.json()
        assert [item["nodeId"] for item in body] == ["start", "tool", "end"]
        assert body[-1]["isComplete"] is True

    def test_chat_rewrite_query_flag(self, client, agent):
        response = client.post(
            "/api/v1/workflows/chat",
            json={"workflow": TOOL_WORKFLOW, "query": "read it", "rewriteQuery": True}
        )

        assert response.status_code == 200
        prompts = [call.args[0] for call in agent.process_message.await_args_list]
        assert prompts[0].startswith("You are transforming a user query")
        assert 'User Query: "agent reply"' in prompts[1]

    def test_chat_invalid_graph(self, client):
        response = client.post("/api/v1/workflows/chat", json={"workflow": HEADLESS_WORKFLOW, "query": "hi"})

        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "InvalidGraph"

    def test_chat_requires_query(self, client):
        response = client.post("/api/v1/workflows/chat", json={"workflow": TOOL_WORKFLOW, "query": ""})

        assert response.status_code == 422


class TestExecutionEndpoints:
    """Registry access over HTTP."""

    def test_list_and_get(self, client):
        execution_id = execute(client)["id"]

        listed = client.get("/api/v1/executions").json()
        fetched = client.get(f"/api/v1/executions/{execution_id}")

        assert [item["id"] for item in listed] == [execution_id]
        assert listed[0]["status"] == "completed"
        assert fetched.status_code == 200
        assert fetched.json()["id"] == execution_id

    def test_get_unknown_execution(self, client):
        response = client.get("/api/v1/executions/exec_missing")

        assert response.status_code == 404
        detail = response.json()["detail"]
        assert detail["error"] == "ExecutionNotFoundError"
        assert detail["context"]["execution_id"] == "exec_missing"

    def test_stop_finished_execution(self, client):
        execution_id = execute(client)["id"]

        response = client.post(f"/api/v1/executions/{execution_id}/stop")

        assert response.status_code == 200
        assert response.json() == {"executionId": execution_id, "stopped": False}

    def test_stop_unknown_execution(self, client):
        assert client.post("/api/v1/executions/exec_missing/stop").status_code == 404

    def test_dispose_execution(self, client):
        execution_id = execute(client)["id"]

        response = client.delete(f"/api/v1/executions/{execution_id}")

        assert response.json() == {"executionId": execution_id, "disposed": True}
        assert client.get(f"/api/v1/executions/{execution_id}").status_code == 404
        assert client.delete(f"/api/v1/executions/{execution_id}").status_code == 404


class TestServiceEndpoints:
    """Health, root and middleware."""

    def test_engine_health(self, client):
        execute(client)

        body = client.get("/api/v1/health").json()

        assert body["status"] == "healthy"
        assert body["tracked_executions"] == 1
        assert body["event_listeners"] == 1
        assert body["websocket_connections"] == 0

    def test_root_and_service_health(self, client, test_config):
        assert client.get("/").json()["version"] == test_config.app_version

        health = client.get("/health").json()
        assert health["status"] == "healthy"
        assert health["agent_configured"] is False

    def test_application_state_is_populated(self, client, test_config):
        state = get_app_state()

        assert state.config is test_config
        assert state.engine is not None
        assert state.websocket_manager is not None

    def test_monitoring_middleware_headers(self, test_config, agent):
        config = test_config.model_copy(update={"enable_performance_monitoring": True})
        client = TestClient(create_app(config, agent=agent))

        response = client.get("/health")

        assert response.status_code == 200
        assert response.headers["X-Request-ID"]
        assert response.headers["X-Response-Time"].endswith("s")

    def test_rejects_invalid_agent_url(self, test_config):
        config = test_config.model_copy(update={"agent_url": "agent.local"})

        with pytest.raises(ValueError):
            create_app(config)


class TestMonitorSocket:
    """The /ws/monitor control protocol."""

    def test_connection_and_ping(self, client):
        with client.websocket_connect("/api/v1/ws/monitor") as websocket:
            established = websocket.receive_json()
            websocket.send_json({"action": "ping"})
            pong = websocket.receive_json()

        assert established["event_type"] == "connection_established"
        assert pong["event_type"] == "pong"

    def test_subscribe_and_status(self, client):
        with client.websocket_connect("/api/v1/ws/monitor") as websocket:
            websocket.receive_json()
            websocket.send_json({"action": "subscribe", "execution_id": "exec_1"})
            confirmed = websocket.receive_json()
            websocket.send_json({"action": "get_status"})
            status = websocket.receive_json()
            websocket.send_json({"action": "unsubscribe", "execution_id": "exec_1"})
            unsubscribed = websocket.receive_json()

        assert confirmed["event_type"] == "subscription_confirmed"
        assert status["event_type"] == "status_info"
        assert status["data"]["execution_subscribers"] == {"exec_1": 1}
        assert unsubscribed["event_type"] == "unsubscribed"

    def test_unknown_action_and_bad_json(self, client):
        with client.websocket_connect("/api/v1/ws/monitor") as websocket:
            websocket.receive_json()
            websocket.send_json({"action": "dance"})
            unknown = websocket.receive_json()
            websocket.send_text("{not json")
            invalid = websocket.receive_json()

        assert unknown["message"] == "Unknown action: dance"
        assert invalid["message"] == "Invalid JSON message format"
