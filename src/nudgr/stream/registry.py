"""Registry of open event streams.

Tracks every live reconciler by connection id and by user so the event bus
can wake a user's streams as soon as something happens for them, and so
shutdown can close them all.
"""

from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from nudgr.stream.reconciler import EventReconciler

logger = structlog.get_logger()


@dataclass
class StreamConnection:
    """A single open stream."""

    conn_id: str
    user_id: int
    reconciler: EventReconciler
    connected_at: float = field(default_factory=time.time)


class ConnectionRegistry:
    """All open streams. Single event loop, so no locking."""

    def __init__(self) -> None:
        self._connections: dict[str, StreamConnection] = {}  # conn_id -> connection
        self._user_connections: dict[int, set[str]] = defaultdict(set)  # user_id -> {conn_ids}

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def add(self, conn_id: str, user_id: int, reconciler: EventReconciler) -> None:
        self._connections[conn_id] = StreamConnection(conn_id=conn_id, user_id=user_id, reconciler=reconciler)
        self._user_connections[user_id].add(conn_id)
        logger.info("stream_registered", conn_id=conn_id, user_id=user_id)

    def remove(self, conn_id: str) -> bool:
        """Forget a connection. Returns False if it was not registered."""
        conn = self._connections.pop(conn_id, None)
        if conn is None:
            return False

        self._user_connections[conn.user_id].discard(conn_id)
        if not self._user_connections[conn.user_id]:
            del self._user_connections[conn.user_id]

        logger.info(
            "stream_unregistered",
            conn_id=conn_id,
            user_id=conn.user_id,
            duration_s=round(time.time() - conn.connected_at, 1),
        )
        return True

    def user_connection_count(self, user_id: int) -> int:
        return len(self._user_connections.get(user_id, ()))

    def wake_user(self, user_id: int) -> int:
        """Wake every stream of ``user_id`` for an immediate poll. Returns how many."""
        conn_ids = list(self._user_connections.get(user_id, ()))
        for conn_id in conn_ids:
            self._connections[conn_id].reconciler.wake()
        return len(conn_ids)

    def close_all(self, reason: str = "server_shutdown") -> int:
        closed = 0
        for conn in list(self._connections.values()):
            if conn.reconciler.close(reason):
                closed += 1
        return closed

    def get_stats(self) -> dict:
        return {
            "total_connections": len(self._connections),
            "unique_users": len(self._user_connections),
        }


# Global singleton
registry = ConnectionRegistry()
