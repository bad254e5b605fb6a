"""
Connection Lifecycle Controller.

Drives each connection through CONNECTED -> AUTHENTICATED -> CLOSED and keeps
the registry, room table, outboxes and presence tracker consistent:

    connect()       CONNECTED        outbox attached
    authenticate()  AUTHENTICATED    personal room joined, receiveOnline sent
    logout()        CONNECTED        rooms purged
    disconnect()    CLOSED           rooms purged, unregistered, outbox detached

Presence transitions are scheduled right after the registry reports an edge,
with no await in between, so the tracker queues them in edge order.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from typing import Any, TYPE_CHECKING

from dm_gateway.components.connection.registry import Connection, ConnectionState
from dm_gateway.components.events.types import EventKind
from shared.config.logging import mask_user_id

if TYPE_CHECKING:
    from dm_gateway.components.connection.registry import ConnectionRegistry
    from dm_gateway.components.connection.rooms import RoomMembershipTable
    from dm_gateway.components.events.router import EventRouter
    from dm_gateway.components.metrics.collector import MetricsCollector
    from dm_gateway.components.presence.tracker import PresenceTracker
    from dm_gateway.core.connection.broadcaster import ConnectionBroadcaster

logger = logging.getLogger(__name__)

__all__ = ["ConnectionLifecycle", "ConnectionState"]


class ConnectionLifecycle:
    """
    Lifecycle operations for one gateway instance.

    Operations that require AUTHENTICATED (join, leave, relay) are ignored
    for any other state and return a falsy value.
    """

    def __init__(
        self,
        registry: "ConnectionRegistry",
        rooms: "RoomMembershipTable",
        router: "EventRouter",
        broadcaster: "ConnectionBroadcaster",
        presence: "PresenceTracker",
        metrics: "MetricsCollector",
    ) -> None:
        self._registry = registry
        self._rooms = rooms
        self._router = router
        self._broadcaster = broadcaster
        self._presence = presence
        self._metrics = metrics
        self._shutdown = False

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    def set_shutdown(self, value: bool) -> None:
        self._shutdown = value

    def connect(self, transport: Any, connection_id: str | None = None) -> Connection:
        """
        Register a new unauthenticated connection and start its outbox.

        Raises:
            ConnectionError: If the gateway is shutting down.
        """
        if self._shutdown:
            raise ConnectionError("Server is shutting down")

        connection = self._registry.register(connection_id or str(uuid.uuid4()), transport)
        self._broadcaster.attach(connection.connection_id, transport)
        self._metrics.increment_connection_accepted()
        return connection

    async def authenticate(self, connection_id: str, user_id: str) -> bool:
        """
        Bind a connection to a user.

        Schedules mark_online on the user's first connection and mark_offline
        for a previous identity the connection was rebound away from, when
        that identity has no connection left. Sends receiveOnline to the
        connection itself.

        Raises:
            ConnectionError: The user is at the per-user connection limit.
        """
        result = await self._registry.authenticate(connection_id, user_id)
        if not result.authenticated:
            return False

        if result.previous_user_id is not None and result.previous_last:
            self._presence.schedule(result.previous_user_id, online=False)
        if result.first_connection:
            self._presence.schedule(user_id, online=True)

        self._router.send_to_connection(
            connection_id,
            EventKind.RECEIVE_ONLINE,
            {"userId": user_id, "online": True},
        )
        return True

    async def logout(self, connection_id: str) -> bool:
        """
        Explicit client logout: drop the identity but keep the socket open.

        The connection returns to CONNECTED with no rooms; mark_offline is
        scheduled if this was the user's last connection.
        """
        result = await self._registry.deauthenticate(connection_id)
        if result.user_id is None:
            return False
        if result.last_connection:
            self._presence.schedule(result.user_id, online=False)
        return True

    def _authenticated(self, connection_id: str, operation: str) -> Connection | None:
        connection = self._registry.get(connection_id)
        if connection is None or connection.state is not ConnectionState.AUTHENTICATED:
            logger.debug("Ignoring request from unauthenticated connection", operation=operation)
            return None
        return connection

    def join(self, connection_id: str, rooms: str | Iterable[str]) -> set[str]:
        """
        Subscribe an authenticated connection to rooms.

        Returns:
            Rooms newly joined; empty when ignored.
        """
        if self._authenticated(connection_id, "join") is None:
            return set()
        joined = self._rooms.join(connection_id, rooms)
        if joined:
            logger.debug("Joined rooms", rooms=sorted(joined))
        return joined

    def leave(self, connection_id: str, room: str) -> bool:
        """Unsubscribe an authenticated connection from a room."""
        if self._authenticated(connection_id, "leave") is None:
            return False
        return self._rooms.leave(connection_id, room)

    def relay(self, connection_id: str, room: str, payload: Any) -> int:
        """
        Forward a client message to the other subscribers of a room.

        The sender must be subscribed to the room and never receives its own
        message.

        Returns:
            Number of connections the message was queued for.
        """
        connection = self._authenticated(connection_id, "relay")
        if connection is None:
            return 0
        if room not in self._rooms.rooms_of(connection_id):
            logger.debug("Ignoring relay to a room the sender has not joined")
            return 0
        return self._router.publish(
            room,
            EventKind.RECEIVE_MESSAGE,
            payload,
            exclude=connection_id,
        )

    async def disconnect(self, connection_id: str) -> bool:
        """
        Tear a connection down from any state. Idempotent.

        Rooms are purged first so no publish can reach the connection while
        the registry entry is being removed.

        Returns:
            True if the connection was registered when the call started.
        """
        connection = self._registry.get(connection_id)
        if connection is None:
            await self._broadcaster.detach(connection_id)
            return False

        self._rooms.purge(connection_id)
        result = await self._registry.unregister(connection_id)
        if result.last_connection and result.user_id is not None:
            self._presence.schedule(result.user_id, online=False)
        await self._broadcaster.detach(connection_id)

        if result.user_id is not None:
            logger.info(
                "Connection closed",
                user_id=mask_user_id(result.user_id),
                last_connection=result.last_connection,
            )
        return True
