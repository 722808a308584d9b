"""WebSocket connection manager for real-time events."""

import json
import logging
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Tracks active WebSocket connections keyed by actor id."""

    def __init__(self) -> None:
        # actor_id -> set of active websocket connections
        self._connections: dict[str, set[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, actor_id: str) -> None:
        await websocket.accept()
        if actor_id not in self._connections:
            self._connections[actor_id] = set()
        self._connections[actor_id].add(websocket)
        logger.info("WS connected: actor=%s (total=%s)", actor_id, self.total_connections)

    def disconnect(self, websocket: WebSocket, actor_id: str) -> None:
        conns = self._connections.get(actor_id)
        if conns:
            conns.discard(websocket)
            if not conns:
                del self._connections[actor_id]
        logger.info("WS disconnected: actor=%s (total=%s)", actor_id, self.total_connections)

    async def send(self, websocket: WebSocket, event: str, data: Any) -> None:
        """Send one event to a single connection."""
        await websocket.send_text(json.dumps({"event": event, "data": data}, default=str))

    async def send_to_actor(self, actor_id: str, event: str, data: Any) -> None:
        """Send event to all connections for an actor."""
        conns = self._connections.get(actor_id, set())
        payload = json.dumps({"event": event, "data": data}, default=str)
        dead: list[WebSocket] = []
        for ws in list(conns):
            try:
                await ws.send_text(payload)
            except Exception:
                dead.append(ws)
        for ws in dead:
            conns.discard(ws)

    def is_connected(self, actor_id: str) -> bool:
        return bool(self._connections.get(actor_id))

    @property
    def total_connections(self) -> int:
        return sum(len(c) for c in self._connections.values())


# Singleton instance used across the app
ws_manager = ConnectionManager()
