"""
Session registry keyed by connection id.

Each connection (one WebSocket, or one SSE response) owns the sessions it
started. Closing a connection closes its sessions; connections with no
activity for ``idle_timeout`` seconds are evicted by the sweeper.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from common.errors import InputSchemaError
from common.logging import get_logger
from streaming.session import Session

logger = get_logger(__name__)


@dataclass
class ConnectionEntry:
    connection_id: str
    sessions: Dict[str, Session] = field(default_factory=dict)
    last_activity: float = field(default_factory=time.monotonic)


class SessionRegistry:
    """Tracks live sessions per connection."""

    def __init__(self, idle_timeout: float = 600.0):
        self.idle_timeout = idle_timeout
        self._connections: Dict[str, ConnectionEntry] = {}

    def open_connection(self, connection_id: str) -> None:
        self._connections.setdefault(connection_id, ConnectionEntry(connection_id))

    def touch(self, connection_id: str) -> None:
        entry = self._connections.get(connection_id)
        if entry is not None:
            entry.last_activity = time.monotonic()

    def is_open(self, connection_id: str) -> bool:
        return connection_id in self._connections

    def add(self, session: Session) -> None:
        """
        Register a session under its connection.

        Raises:
            InputSchemaError: If the request id is already running on this connection
        """
        entry = self._connections.setdefault(
            session.connection_id, ConnectionEntry(session.connection_id)
        )
        if session.request_id in entry.sessions:
            raise InputSchemaError(
                session.operation.value,
                [f"requestId '{session.request_id}' is already running on this connection"],
            )
        entry.sessions[session.request_id] = session
        entry.last_activity = time.monotonic()

    def remove(self, session: Session) -> None:
        entry = self._connections.get(session.connection_id)
        if entry is not None and entry.sessions.get(session.request_id) is session:
            del entry.sessions[session.request_id]

    def get(self, connection_id: str, request_id: str) -> Optional[Session]:
        entry = self._connections.get(connection_id)
        return entry.sessions.get(request_id) if entry else None

    def sessions_for(self, connection_id: str) -> List[Session]:
        entry = self._connections.get(connection_id)
        return list(entry.sessions.values()) if entry else []

    def close_connection(self, connection_id: str) -> int:
        """Forget a connection and close its running sessions; returns how many were closed."""
        entry = self._connections.pop(connection_id, None)
        if entry is None:
            return 0
        for session in entry.sessions.values():
            session.close()
        if entry.sessions:
            logger.info(
                event="connection_sessions_closed",
                connection_id=connection_id,
                closed_sessions=len(entry.sessions),
            )
        return len(entry.sessions)

    def evict_idle(self, now: Optional[float] = None) -> List[str]:
        """Close every connection idle for longer than ``idle_timeout``."""
        now = time.monotonic() if now is None else now
        idle = [
            connection_id
            for connection_id, entry in self._connections.items()
            if now - entry.last_activity > self.idle_timeout
        ]
        for connection_id in idle:
            self.close_connection(connection_id)
        if idle:
            logger.info(
                event="idle_connections_evicted",
                evicted=len(idle),
                remaining=len(self._connections),
                idle_timeout=self.idle_timeout,
            )
        return idle

    async def sweep_forever(self, interval: float) -> None:
        """Evict idle connections every ``interval`` seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            self.evict_idle()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    @property
    def active_session_count(self) -> int:
        return sum(len(entry.sessions) for entry in self._connections.values())
