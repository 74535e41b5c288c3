"""Publish/subscribe bus for workflow lifecycle events."""

import asyncio
import inspect
import threading
import uuid
from typing import Any, Callable, Dict, Optional, Set

from ..models.core import WorkflowEvent, WorkflowEventType
from .logging import get_logger


logger = get_logger(__name__)

EventCallback = Callable[[WorkflowEvent], Any]


class EventBus:
    """
    Delivers every published :class:`WorkflowEvent` to all subscribers.

    Delivery iterates over a snapshot of the subscribers, so a callback may
    subscribe or dispose during delivery. A subscriber that raises is logged
    and skipped. Callbacks returning an awaitable are scheduled as tasks on
    the running loop instead of being awaited inline.
    """

    def __init__(self):
        self._subscribers: Dict[str, EventCallback] = {}
        self._lock = threading.RLock()
        self._pending: Set[asyncio.Future] = set()

    def subscribe(self, callback: EventCallback, listener_id: Optional[str] = None) -> Callable[[], bool]:
        """Register ``callback`` and return a disposer that removes it."""
        listener_id = listener_id or f"listener_{uuid.uuid4().hex}"
        with self._lock:
            if listener_id in self._subscribers:
                logger.debug(f"Replacing event listener {listener_id}")
            self._subscribers[listener_id] = callback

        def dispose() -> bool:
            with self._lock:
                # A later subscribe under the same id must survive this disposer.
                if self._subscribers.get(listener_id) is callback:
                    del self._subscribers[listener_id]
                    return True
                return False

        return dispose

    def unsubscribe(self, listener_id: str) -> bool:
        with self._lock:
            return self._subscribers.pop(listener_id, None) is not None

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event: WorkflowEvent) -> None:
        with self._lock:
            snapshot = list(self._subscribers.items())

        for listener_id, callback in snapshot:
            try:
                outcome = callback(event)
            except Exception as e:
                logger.error(f"Event listener {listener_id} failed on {event.type.value}: {e}", exc_info=True)
                continue

            if inspect.isawaitable(outcome):
                self._schedule(listener_id, outcome)

    def emit(
        self,
        event_type: WorkflowEventType,
        workflow_id: str,
        execution_id: str,
        node_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None
    ) -> WorkflowEvent:
        """Build and publish an event."""
        event = WorkflowEvent(
            type=event_type,
            workflow_id=workflow_id,
            execution_id=execution_id,
            node_id=node_id,
            data=data
        )
        self.publish(event)
        return event

    def _schedule(self, listener_id: str, awaitable) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"Event listener {listener_id} returned an awaitable outside an event loop")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        future = asyncio.ensure_future(awaitable, loop=loop)
        self._pending.add(future)

        def _done(done: asyncio.Future) -> None:
            self._pending.discard(done)
            if done.cancelled():
                return
            error = done.exception()
            if error is not None:
                logger.error(f"Async event listener {listener_id} failed: {error}")

        future.add_done_callback(_done)
