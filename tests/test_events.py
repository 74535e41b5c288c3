"""Tests for the workflow event bus."""

import asyncio
import logging

import pytest

from agentflow.core.events import EventBus
from agentflow.models.core import WorkflowEvent, WorkflowEventType


@pytest.fixture
def bus():
    return EventBus()


def started_event(execution_id="exec_1"):
    return WorkflowEvent(type=WorkflowEventType.EXECUTION_STARTED, workflow_id="wf", execution_id=execution_id)


class TestSubscription:
    """Subscribe, dispose and unsubscribe."""

    def test_every_subscriber_receives_event(self, bus):
        first, second = [], []
        bus.subscribe(first.append)
        bus.subscribe(second.append)

        event = started_event()
        bus.publish(event)

        assert first == [event]
        assert second == [event]
        assert bus.listener_count == 2

    def test_dispose_is_idempotent(self, bus):
        received = []
        dispose = bus.subscribe(received.append)

        assert dispose() is True
        assert dispose() is False
        bus.publish(started_event())

        assert received == []

    def test_unsubscribe_by_listener_id(self, bus):
        received = []
        bus.subscribe(received.append, listener_id="ui")

        assert bus.unsubscribe("ui") is True
        assert bus.unsubscribe("ui") is False
        bus.publish(started_event())

        assert received == []

    def test_stale_disposer_keeps_replacement(self, bus):
        old, new = [], []
        dispose_old = bus.subscribe(old.append, listener_id="ui")
        bus.subscribe(new.append, listener_id="ui")

        assert dispose_old() is False
        bus.publish(started_event())

        assert old == []
        assert len(new) == 1

    def test_emit_builds_and_publishes(self, bus):
        received = []
        bus.subscribe(received.append)

        event = bus.emit(
            WorkflowEventType.NODE_COMPLETED, "wf", "exec_1", node_id="tool", data={"duration": 12.5}
        )

        assert received == [event]
        assert event.node_id == "tool"
        assert event.data == {"duration": 12.5}
        assert event.timestamp.tzinfo is not None


class TestDelivery:
    """Delivery guarantees."""

    def test_failing_subscriber_does_not_block_others(self, bus, caplog):
        received = []

        def broken(event):
            raise RuntimeError("listener crashed")

        bus.subscribe(broken, listener_id="broken")
        bus.subscribe(received.append)

        with caplog.at_level(logging.ERROR, logger="agentflow.core.events"):
            bus.publish(started_event())

        assert len(received) == 1
        assert "listener crashed" in caplog.text

    def test_subscribing_during_delivery_takes_effect_next_time(self, bus):
        late = []

        def subscribe_late(event):
            bus.subscribe(late.append, listener_id="late")

        bus.subscribe(subscribe_late)
        bus.publish(started_event("exec_1"))
        assert late == []

        bus.publish(started_event("exec_2"))
        assert [event.execution_id for event in late] == ["exec_2"]

    def test_disposing_during_delivery(self, bus):
        calls = []
        disposers = {}

        def once(event):
            calls.append(event)
            disposers["once"]()

        disposers["once"] = bus.subscribe(once)
        bus.publish(started_event())
        bus.publish(started_event())

        assert len(calls) == 1

    async def test_async_subscriber_is_scheduled(self, bus):
        received = []

        async def relay(event):
            await asyncio.sleep(0)
            received.append(event)

        bus.subscribe(relay)
        event = started_event()
        bus.publish(event)

        assert received == []
        await asyncio.sleep(0.01)
        assert received == [event]

    async def test_async_subscriber_failure_is_logged(self, bus, caplog):
        async def broken(event):
            raise RuntimeError("async listener crashed")

        bus.subscribe(broken, listener_id="broken")

        with caplog.at_level(logging.ERROR, logger="agentflow.core.events"):
            bus.publish(started_event())
            await asyncio.sleep(0.01)

        assert "async listener crashed" in caplog.text

    def test_async_subscriber_outside_loop_is_dropped(self, bus, caplog):
        received = []

        async def relay(event):
            received.append(event)

        bus.subscribe(relay, listener_id="relay")

        with caplog.at_level(logging.WARNING, logger="agentflow.core.events"):
            bus.publish(started_event())

        assert received == []
        assert "outside an event loop" in caplog.text
