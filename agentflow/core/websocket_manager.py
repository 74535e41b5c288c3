"""WebSocket manager relaying workflow events to monitoring clients."""

import asyncio
import json
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, Set, Any, Optional
from fastapi import WebSocket, WebSocketDisconnect

from ..models.core import WorkflowEvent
from .events import EventBus
from .logging import get_logger

logger = get_logger(__name__)

ALL_EXECUTIONS = "*"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class WebSocketConnection:
    """Represents a WebSocket connection with metadata."""

    def __init__(self, websocket: WebSocket, connection_id: str):
        self.websocket = websocket
        self.connection_id = connection_id
        self.connected_at = datetime.now(timezone.utc)
        self.subscribed_executions: Set[str] = set()
        self.is_active = True


class WebSocketManager:
    """
    Tracks monitoring connections and their execution subscriptions.

    Once attached to an :class:`EventBus`, every published event is relayed
    to the connections subscribed to its execution id, or to ``"*"``.
    """

    def __init__(self, max_connections: int = 100):
        self.max_connections = max_connections
        self._connections: Dict[str, WebSocketConnection] = {}
        self._execution_subscribers: Dict[str, Set[str]] = {}
        self._broadcast_lock = asyncio.Lock()
        self._detach: Optional[Callable[[], bool]] = None

        logger.info("WebSocketManager initialized")

    def attach(self, event_bus: EventBus) -> None:
        """Start relaying events published on ``event_bus``."""
        self.detach()
        self._detach = event_bus.subscribe(self.handle_event, listener_id="websocket_manager")

    def detach(self) -> None:
        if self._detach is not None:
            self._detach()
            self._detach = None

    async def connect(self, websocket: WebSocket) -> Optional[str]:
        """
        Accept a new WebSocket connection.

        Returns the connection id, or None when the connection limit is
        reached (the socket is closed with code 1013).
        """
        await websocket.accept()

        if self.get_connection_count() >= self.max_connections:
            logger.warning("WebSocket connection limit reached, rejecting connection")
            await websocket.close(code=1013)
            return None

        connection_id = str(uuid.uuid4())
        self._connections[connection_id] = WebSocketConnection(websocket, connection_id)

        logger.info(f"WebSocket connection established: {connection_id}")

        await self._send_to_connection(connection_id, {
            "event_type": "connection_established",
            "connection_id": connection_id,
            "timestamp": _now(),
            "message": "WebSocket connection established successfully"
        })

        return connection_id

    async def disconnect(self, connection_id: str) -> None:
        """Handle WebSocket disconnection and cleanup."""
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return

        connection.is_active = False
        for execution_id in list(connection.subscribed_executions):
            self._remove_subscription(connection_id, execution_id)

        logger.info(f"WebSocket connection disconnected and cleaned up: {connection_id}")

    async def subscribe(self, connection_id: str, execution_id: str) -> bool:
        """Subscribe a connection to the events of one execution (or ``"*"`` for all)."""
        connection = self._connections.get(connection_id)
        if connection is None or not connection.is_active:
            logger.warning(f"Attempted to subscribe unknown or inactive connection: {connection_id}")
            return False

        connection.subscribed_executions.add(execution_id)
        self._execution_subscribers.setdefault(execution_id, set()).add(connection_id)

        logger.info(f"Connection {connection_id} subscribed to execution {execution_id}")

        await self._send_to_connection(connection_id, {
            "event_type": "subscription_confirmed",
            "execution_id": execution_id,
            "timestamp": _now(),
            "message": f"Subscribed to execution {execution_id}"
        })
        return True

    async def unsubscribe(self, connection_id: str, execution_id: str) -> bool:
        if connection_id not in self._connections:
            return False
        self._remove_subscription(connection_id, execution_id)
        logger.info(f"Connection {connection_id} unsubscribed from execution {execution_id}")
        return True

    def _remove_subscription(self, connection_id: str, execution_id: str) -> None:
        connection = self._connections.get(connection_id)
        if connection is not None:
            connection.subscribed_executions.discard(execution_id)

        subscribers = self._execution_subscribers.get(execution_id)
        if subscribers is not None:
            subscribers.discard(connection_id)
            if not subscribers:
                del self._execution_subscribers[execution_id]

    async def handle_event(self, event: WorkflowEvent) -> None:
        """Event bus callback: relay ``event`` to its subscribers."""
        subscribers = set(self._execution_subscribers.get(event.execution_id, set()))
        subscribers |= self._execution_subscribers.get(ALL_EXECUTIONS, set())
        if not subscribers:
            return

        message = {"event_type": "workflow_event", "event": event.model_dump(by_alias=True)}

        async with self._broadcast_lock:
            disconnected = []
            for connection_id in subscribers:
                if not await self._send_to_connection(connection_id, message):
                    disconnected.append(connection_id)

            for connection_id in disconnected:
                await self.disconnect(connection_id)

        logger.debug(f"Relayed {event.type.value} for execution {event.execution_id} to {len(subscribers)} connections")

    async def _send_to_connection(self, connection_id: str, data: Dict[str, Any]) -> bool:
        """Send JSON to one connection. Returns False when the connection is gone."""
        connection = self._connections.get(connection_id)
        if connection is None or not connection.is_active:
            return False

        try:
            await connection.websocket.send_text(json.dumps(data, default=str))
            return True
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected during send: {connection_id}")
            connection.is_active = False
            return False
        except Exception as e:
            logger.error(f"Error sending WebSocket message to {connection_id}: {str(e)}")
            connection.is_active = False
            return False

    async def send_to_connection(self, connection_id: str, data: Dict[str, Any]) -> bool:
        return await self._send_to_connection(connection_id, data)

    def get_connection_count(self) -> int:
        return len([conn for conn in self._connections.values() if conn.is_active])

    def get_subscriber_count(self, execution_id: str) -> int:
        return len(self._execution_subscribers.get(execution_id, set()))

    def get_connection_info(self) -> Dict[str, Any]:
        """Get information about all active connections."""
        active_connections = [
            {
                "connection_id": conn_id,
                "connected_at": conn.connected_at.isoformat(),
                "subscribed_executions": sorted(conn.subscribed_executions)
            }
            for conn_id, conn in self._connections.items()
            if conn.is_active
        ]

        return {
            "total_connections": len(active_connections),
            "connections": active_connections,
            "execution_subscribers": {
                execution_id: len(subscribers)
                for execution_id, subscribers in self._execution_subscribers.items()
            }
        }
