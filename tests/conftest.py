"""Pytest configuration and fixtures."""

from typing import Any, Dict, Iterable
from unittest.mock import AsyncMock

import pytest

from agentflow.config import get_testing_config
from agentflow.core.engine import WorkflowEngine
from agentflow.models.core import AgentResponse, ToolCall, WorkflowDefinition


@pytest.fixture
def test_config():
    """Configuration used by engine and API tests."""
    return get_testing_config()


@pytest.fixture
def agent():
    """Agent collaborator double answering every prompt with a canned reply."""
    mock = AsyncMock()
    mock.process_message.return_value = AgentResponse(
        content="agent reply",
        tool_calls=[ToolCall(name="read_file", args={"path": "/tmp/report.txt"}, result="hello")]
    )
    return mock


@pytest.fixture
def engine(agent, test_config):
    """Workflow engine wired to the agent double."""
    return WorkflowEngine(agent, config=test_config)


def _node(entry) -> Dict[str, Any]:
    node_id, node_type = entry[0], entry[1]
    data = entry[2] if len(entry) > 2 and entry[2] is not None else {}
    return {"id": node_id, "type": node_type, "data": data}


def _edge(entry) -> Dict[str, Any]:
    source, target = entry[0], entry[1]
    edge = {"id": f"{source}->{target}", "source": source, "target": target}
    if len(entry) > 2:
        edge["type"] = entry[2]
    if len(entry) > 3:
        edge["data"] = {"condition": entry[3]}
    return edge


@pytest.fixture
def make_workflow():
    """
    Build a WorkflowDefinition from compact node and edge tuples.

    Nodes are ``(id, type[, data])`` and edges ``(source, target[, type[, condition]])``.
    """
    def build(nodes: Iterable[tuple], edges: Iterable[tuple], workflow_id: str = "wf_test") -> WorkflowDefinition:
        return WorkflowDefinition.model_validate({
            "id": workflow_id,
            "name": f"Workflow {workflow_id}",
            "nodes": [_node(entry) for entry in nodes],
            "edges": [_edge(entry) for entry in edges],
        })

    return build


@pytest.fixture
def tool_workflow(make_workflow):
    """start -> tool -> end, the smallest agent-backed workflow."""
    return make_workflow(
        [
            ("start", "start"),
            ("tool", "tool", {"serverId": "filesystem", "toolName": "read_file", "parameters": {"path": "/tmp/report.txt"}}),
            ("end", "end"),
        ],
        [("start", "tool"), ("tool", "end")]
    )
