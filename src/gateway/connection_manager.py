"""
WebSocket connection management.

Tracks open sockets and serializes writes per connection, so concurrent
sessions on one socket never interleave partial frames.
"""

import asyncio
from typing import Dict

from fastapi import WebSocket

from common.logging import get_logger
from common.models import CamelModel

logger = get_logger(__name__)


class ConnectionManager:
    """Manages WebSocket connections and outbound frames."""

    def __init__(self, max_connections: int = 100):
        self.max_connections = max_connections
        self.active_connections: Dict[str, WebSocket] = {}
        self._send_locks: Dict[str, asyncio.Lock] = {}

    def has_capacity(self) -> bool:
        return len(self.active_connections) < self.max_connections

    async def connect(self, websocket: WebSocket, connection_id: str) -> None:
        """Accept a new WebSocket connection."""
        await websocket.accept()
        self.active_connections[connection_id] = websocket
        self._send_locks[connection_id] = asyncio.Lock()

        logger.info(
            event="connection_established",
            connection_id=connection_id,
            total_connections=len(self.active_connections),
        )

    def disconnect(self, connection_id: str) -> None:
        """Remove a WebSocket connection."""
        self.active_connections.pop(connection_id, None)
        self._send_locks.pop(connection_id, None)

        logger.info(
            event="connection_closed",
            connection_id=connection_id,
            total_connections=len(self.active_connections),
        )

    async def send_to_connection(self, connection_id: str, frame: CamelModel) -> bool:
        """
        Send one frame to a specific connection.

        Returns:
            True if sent successfully, False if connection not found or failed
        """
        websocket = self.active_connections.get(connection_id)
        lock = self._send_locks.get(connection_id)
        if websocket is None or lock is None:
            logger.debug(
                event="connection_not_found",
                connection_id=connection_id,
                frame_type=getattr(frame, "type", None),
            )
            return False

        try:
            async with lock:
                await websocket.send_json(frame.to_wire())
            return True
        except Exception as e:
            logger.warning(
                event="send_failed",
                connection_id=connection_id,
                frame_type=getattr(frame, "type", None),
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

    def get_connection_count(self) -> int:
        """Get the total number of active connections."""
        return len(self.active_connections)
