"""
Dead connection cleanup.

Connections whose transport failed during a send are marked dead by the
broadcaster and disconnected by the periodic sweep, outside the delivery
path. Stale user locks are evicted on every LOCK_CLEANUP_CYCLE-th sweep.
"""

from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, TYPE_CHECKING

from dm_gateway.components.core.constants import WSConstants

if TYPE_CHECKING:
    from dm_gateway.components.connection.locks import LockManager
    from dm_gateway.components.connection.registry import ConnectionRegistry
    from dm_gateway.components.metrics.collector import MetricsCollector

logger = logging.getLogger(__name__)


class ConnectionCleanup:
    """
    Tracks dead connections and disconnects them in batches.

    The dead set is bounded; at capacity the connection marked earliest is
    evicted (it will still be removed when its receive loop ends).
    """

    def __init__(
        self,
        lock_manager: "LockManager",
        registry: "ConnectionRegistry",
        metrics: "MetricsCollector",
        disconnect_callback: Callable[[str], Awaitable[None]],
        max_dead_connections: int = WSConstants.MAX_DEAD_CONNECTIONS,
    ) -> None:
        self._lock_manager = lock_manager
        self._registry = registry
        self._metrics = metrics
        self._disconnect = disconnect_callback
        self._max_dead_connections = max_dead_connections

        # connection_id -> time marked dead (insertion ordered)
        self._dead_connections: dict[str, float] = {}

    @property
    def dead_connections_count(self) -> int:
        return len(self._dead_connections)

    async def mark_dead(self, connection_id: str) -> None:
        """Queue a connection for disconnect on the next sweep."""
        async with self._lock_manager.dead_connections_lock:
            if connection_id in self._dead_connections:
                return

            if len(self._dead_connections) >= self._max_dead_connections:
                oldest = next(iter(self._dead_connections))
                del self._dead_connections[oldest]
                logger.warning(
                    "Dead connections at capacity, evicting oldest",
                    max_size=self._max_dead_connections,
                )

            self._dead_connections[connection_id] = time.time()

    async def cleanup_dead_connections(self) -> int:
        """
        Disconnect every connection marked dead since the last sweep.

        Returns:
            Number of connections cleaned up.
        """
        async with self._lock_manager.dead_connections_lock:
            if not self._dead_connections:
                return 0
            dead = list(self._dead_connections)
            self._dead_connections.clear()

        cleaned = 0
        for connection_id in dead:
            try:
                await self._disconnect(connection_id)
                cleaned += 1
            except Exception as e:
                logger.warning("Failed to clean up dead connection", error=str(e))

        if cleaned:
            self._metrics.add_dead_connections_cleaned(cleaned)
            logger.info("Cleaned up dead connections", count=cleaned)
        return cleaned

    async def cleanup_locks(self) -> int:
        """Evict locks of users that no longer own a connection."""
        cleaned = await self._lock_manager.cleanup_stale_locks(self._registry.online_user_ids())
        if cleaned > 0:
            self._metrics.add_locks_cleaned(cleaned)
        return cleaned
