"""
WebSocket Connection Manager.

Composition root for the realtime core. Wires:
- ConnectionRegistry + RoomMembershipTable: who is connected, subscribed where
- EventRouter + ConnectionBroadcaster: fanout into per-connection outboxes
- PresenceTracker: online/offline persistence and friend notifications
- ConnectionLifecycle: the state machine driving all of the above
- ConnectionCleanup: disconnects connections whose transport failed

Write paths publish through publish() / publish_event(), either in process
or via the Redis bridge (see redis_subscriber.py).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from enum import Enum
from typing import Any

from shared.config.settings import settings
from dm_gateway.components.core.constants import WSCloseCode, WSConstants
from dm_gateway.components.connection.locks import LockManager
from dm_gateway.components.connection.registry import Connection, ConnectionRegistry
from dm_gateway.components.connection.rooms import RoomMembershipTable
from dm_gateway.components.data.user_directory import SqlUserDirectory, UserDirectory
from dm_gateway.components.events.router import EventRouter
from dm_gateway.components.events.types import DomainEvent, Target
from dm_gateway.components.metrics.collector import MetricsCollector
from dm_gateway.components.presence.tracker import PresenceTracker
from dm_gateway.core.connection import (
    ConnectionBroadcaster,
    ConnectionCleanup,
    ConnectionLifecycle,
)

logger = logging.getLogger(__name__)

__all__ = ["ConnectionManager"]


class ConnectionManager:
    """
    Manages realtime connections, rooms, presence and fanout.

    Lock ordering (to prevent deadlocks):
    1. user locks (per-user, ascending user_id, via LockManager.user_locks)
    2. registry index lock (threading, never held across an await)
    3. room table lock (threading, never held across an await)
    4. dead_connections_lock
    """

    def __init__(
        self,
        directory: UserDirectory | None = None,
        *,
        max_connections_per_user: int | None = None,
        outbox_size: int | None = None,
    ) -> None:
        if directory is None:
            directory = SqlUserDirectory(timeout=settings.directory_lookup_timeout)
        if max_connections_per_user is None:
            max_connections_per_user = settings.ws_max_connections_per_user
        if outbox_size is None:
            outbox_size = settings.ws_outbox_size

        self._directory = directory
        self._lock_manager = LockManager()
        self._metrics = MetricsCollector()
        self._rooms = RoomMembershipTable()
        self._registry = ConnectionRegistry(
            rooms=self._rooms,
            lock_manager=self._lock_manager,
            max_connections_per_user=max_connections_per_user,
        )

        # Broadcaster reports failed sends to cleanup; cleanup disconnects
        # through the lifecycle, which detaches the broadcaster's outbox.
        self._broadcaster = ConnectionBroadcaster(
            metrics=self._metrics,
            mark_dead_callback=self._mark_dead,
            outbox_size=outbox_size,
        )
        self._router = EventRouter(self._rooms, self._broadcaster, self._metrics)
        self._presence = PresenceTracker(directory, self._router, self._metrics)
        self._lifecycle = ConnectionLifecycle(
            registry=self._registry,
            rooms=self._rooms,
            router=self._router,
            broadcaster=self._broadcaster,
            presence=self._presence,
            metrics=self._metrics,
        )
        self._cleanup = ConnectionCleanup(
            lock_manager=self._lock_manager,
            registry=self._registry,
            metrics=self._metrics,
            disconnect_callback=self._close_dead_connection,
        )

    # =========================================================================
    # Components
    # =========================================================================

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    @property
    def rooms(self) -> RoomMembershipTable:
        return self._rooms

    @property
    def router(self) -> EventRouter:
        return self._router

    @property
    def presence(self) -> PresenceTracker:
        return self._presence

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    @property
    def lock_manager(self) -> LockManager:
        return self._lock_manager

    @property
    def total_connections(self) -> int:
        return self._registry.count

    # =========================================================================
    # Lifecycle (delegated)
    # =========================================================================

    def connect(self, transport: Any, connection_id: str | None = None) -> Connection:
        return self._lifecycle.connect(transport, connection_id)

    async def authenticate(self, connection_id: str, user_id: str) -> bool:
        return await self._lifecycle.authenticate(connection_id, user_id)

    async def logout(self, connection_id: str) -> bool:
        return await self._lifecycle.logout(connection_id)

    def join(self, connection_id: str, rooms: str | Iterable[str]) -> set[str]:
        return self._lifecycle.join(connection_id, rooms)

    def leave(self, connection_id: str, room: str) -> bool:
        return self._lifecycle.leave(connection_id, room)

    def relay(self, connection_id: str, room: str, payload: Any) -> int:
        return self._lifecycle.relay(connection_id, room, payload)

    async def disconnect(self, connection_id: str) -> bool:
        return await self._lifecycle.disconnect(connection_id)

    # =========================================================================
    # Publishing
    # =========================================================================

    def publish(
        self,
        target: Target | str | Iterable[str],
        event_kind: str | Enum,
        payload: Any,
        *,
        exclude: str | None = None,
    ) -> int:
        return self._router.publish(target, event_kind, payload, exclude=exclude)

    def publish_event(self, event: DomainEvent) -> int:
        return self._router.publish_event(event)

    async def flush(self, timeout: float | None = None) -> None:
        """Wait for pending presence transitions, then for queued deliveries."""
        await self._presence.drain(timeout=timeout)
        await self._broadcaster.flush(timeout=timeout)

    # =========================================================================
    # Cleanup
    # =========================================================================

    async def _mark_dead(self, connection_id: str) -> None:
        await self._cleanup.mark_dead(connection_id)

    async def _close_dead_connection(self, connection_id: str) -> None:
        connection = self._registry.get(connection_id)
        if connection is not None:
            await _close_transport(connection.transport, WSCloseCode.GOING_AWAY, "Delivery failed")
        await self._lifecycle.disconnect(connection_id)

    async def cleanup_dead_connections(self) -> int:
        return await self._cleanup.cleanup_dead_connections()

    async def cleanup_locks(self) -> int:
        return await self._cleanup.cleanup_locks()

    # =========================================================================
    # Stats
    # =========================================================================

    def get_stats(self) -> dict[str, Any]:
        """Connection statistics for the health endpoint."""
        return {
            **self._registry.get_stats(),
            "rooms": self._rooms.get_stats(),
            "outboxes": self._broadcaster.get_stats(),
            "pending_presence_transitions": self._presence.pending_count,
            "dead_connections_pending": self._cleanup.dead_connections_count,
            "locks": self._lock_manager.get_stats(),
            "metrics": self._metrics.get_snapshot(),
        }

    # =========================================================================
    # Shutdown
    # =========================================================================

    async def shutdown(self) -> int:
        """Graceful shutdown: close every connection, then drain background work."""
        self._lifecycle.set_shutdown(True)
        logger.info("Connection manager shutting down")

        connection_ids = self._registry.all_connection_ids()
        closed = 0
        for connection_id in connection_ids:
            connection = self._registry.get(connection_id)
            if connection is None:
                continue
            if await _close_transport(connection.transport, WSCloseCode.GOING_AWAY, "Server shutdown"):
                closed += 1
            await self._lifecycle.disconnect(connection_id)

        await self._presence.drain(timeout=WSConstants.PRESENCE_DRAIN_TIMEOUT)
        await self._broadcaster.stop(timeout=WSConstants.OUTBOX_DRAIN_TIMEOUT)
        await self._lock_manager.await_pending_cleanup()

        logger.info("Connection manager shutdown complete", closed=closed)
        return closed

    def is_shutting_down(self) -> bool:
        return self._lifecycle.is_shutdown


async def _close_transport(transport: Any, code: int, reason: str) -> bool:
    """Close a transport if it supports closing. Errors mean it is already gone."""
    close = getattr(transport, "close", None)
    if close is None:
        return False
    try:
        await asyncio.wait_for(close(code=code, reason=reason), timeout=2.0)
        return True
    except (ConnectionError, RuntimeError, OSError, asyncio.TimeoutError):
        return False
