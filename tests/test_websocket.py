"""Tests for the WebSocket monitoring relay."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from agentflow.core.events import EventBus
from agentflow.core.websocket_manager import WebSocketManager
from agentflow.models.core import WorkflowEvent, WorkflowEventType


def fake_socket():
    websocket = AsyncMock()
    websocket.sent = []
    websocket.send_text.side_effect = lambda text: websocket.sent.append(json.loads(text))
    return websocket


def node_event(execution_id="exec_1"):
    return WorkflowEvent(
        type=WorkflowEventType.NODE_STARTED, workflow_id="wf", execution_id=execution_id, node_id="tool"
    )


@pytest.fixture
def manager():
    return WebSocketManager(max_connections=2)


class TestConnections:
    """Connection lifecycle."""

    async def test_connect_sends_greeting(self, manager):
        websocket = fake_socket()

        connection_id = await manager.connect(websocket)

        websocket.accept.assert_awaited_once()
        assert websocket.sent[0]["event_type"] == "connection_established"
        assert websocket.sent[0]["connection_id"] == connection_id
        assert manager.get_connection_count() == 1

    async def test_connection_limit(self, manager):
        await manager.connect(fake_socket())
        await manager.connect(fake_socket())
        rejected = fake_socket()

        assert await manager.connect(rejected) is None
        rejected.close.assert_awaited_once_with(code=1013)
        assert manager.get_connection_count() == 2

    async def test_disconnect_drops_subscriptions(self, manager):
        connection_id = await manager.connect(fake_socket())
        await manager.subscribe(connection_id, "exec_1")

        await manager.disconnect(connection_id)

        assert manager.get_connection_count() == 0
        assert manager.get_subscriber_count("exec_1") == 0

    async def test_subscribe_unknown_connection(self, manager):
        assert await manager.subscribe("missing", "exec_1") is False


class TestRelay:
    """Event relay to subscribers."""

    async def test_subscribers_receive_their_execution(self, manager):
        websocket = fake_socket()
        connection_id = await manager.connect(websocket)
        await manager.subscribe(connection_id, "exec_1")

        await manager.handle_event(node_event("exec_1"))
        await manager.handle_event(node_event("exec_2"))

        relayed = [message for message in websocket.sent if message["event_type"] == "workflow_event"]
        assert len(relayed) == 1
        assert relayed[0]["event"]["executionId"] == "exec_1"
        assert relayed[0]["event"]["nodeId"] == "tool"
        assert relayed[0]["event"]["type"] == "node_started"

    async def test_wildcard_subscription(self, manager):
        websocket = fake_socket()
        connection_id = await manager.connect(websocket)
        await manager.subscribe(connection_id, "*")

        await manager.handle_event(node_event("exec_1"))
        await manager.handle_event(node_event("exec_2"))

        relayed = [message["event"]["executionId"] for message in websocket.sent if message["event_type"] == "workflow_event"]
        assert relayed == ["exec_1", "exec_2"]

    async def test_broken_socket_is_disconnected(self, manager):
        websocket = fake_socket()
        connection_id = await manager.connect(websocket)
        await manager.subscribe(connection_id, "exec_1")
        websocket.send_text.side_effect = RuntimeError("socket closed")

        await manager.handle_event(node_event("exec_1"))

        assert manager.get_connection_count() == 0

    async def test_attached_manager_relays_bus_events(self, manager):
        bus = EventBus()
        manager.attach(bus)
        websocket = fake_socket()
        connection_id = await manager.connect(websocket)
        await manager.subscribe(connection_id, "exec_1")

        bus.emit(WorkflowEventType.EXECUTION_COMPLETED, "wf", "exec_1")
        await asyncio.sleep(0.01)

        assert websocket.sent[-1]["event"]["type"] == "execution_completed"

        manager.detach()
        assert bus.listener_count == 0
