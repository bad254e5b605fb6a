"""
Connection Registry.

Authoritative map of live connections and of the user identity bound to each.
A user is online exactly while their connection set is non-empty, so the
registry is where presence edges are detected:

- authenticate() reports first_connection when a user goes from 0 to 1
- unregister()/deauthenticate() report last_connection when a user goes
  from 1 to 0

Each edge is computed while holding that user's lock from the LockManager,
in the same critical section as the mutation, so N concurrent connects and
closes of one user yield exactly one edge each way.

Index mutations themselves are short synchronous sections under a
threading.Lock; read methods return copies.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any

from dm_gateway.components.connection.locks import LockManager
from dm_gateway.components.connection.rooms import RoomMembershipTable
from shared.config.logging import mask_user_id
from shared.infrastructure.events.rooms import personal_room

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """Lifecycle state of a connection. CLOSED is terminal."""

    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


@dataclass(eq=False)
class Connection:
    """
    A live client connection.

    Hashes by identity; the transport is any object with
    `async send_json(payload)`.
    """

    connection_id: str
    transport: Any
    user_id: str | None = None
    state: ConnectionState = ConnectionState.CONNECTED

    @property
    def is_authenticated(self) -> bool:
        return self.state is ConnectionState.AUTHENTICATED


@dataclass(frozen=True)
class AuthResult:
    """
    Outcome of binding a connection to a user.

    first_connection: the user went from zero to one connection.
    previous_user_id / previous_last: the connection was rebound away from
    another user, and that was the previous user's last connection.
    """

    authenticated: bool
    first_connection: bool = False
    previous_user_id: str | None = None
    previous_last: bool = False


@dataclass(frozen=True)
class UnregisterResult:
    """Outcome of unbinding a connection (logout or removal)."""

    user_id: str | None = None
    last_connection: bool = False


_NOT_FOUND = AuthResult(authenticated=False)
_NO_OP = UnregisterResult()


class ConnectionRegistry:
    """
    Tracks live connections and their user bindings.

    Unknown connection ids are no-ops everywhere.
    """

    def __init__(
        self,
        rooms: RoomMembershipTable,
        lock_manager: LockManager,
        max_connections_per_user: int = 10,
    ):
        self._rooms = rooms
        self._locks = lock_manager
        self._max_per_user = max_connections_per_user

        self._connections: dict[str, Connection] = {}
        self._by_user: dict[str, set[str]] = {}
        self._index_lock = threading.Lock()

    def register(self, connection_id: str, transport: Any) -> Connection:
        """
        Create an entry with no identity and no rooms.

        Registering an id that is already present returns the existing entry.
        """
        with self._index_lock:
            existing = self._connections.get(connection_id)
            if existing is not None:
                return existing
            connection = Connection(connection_id=connection_id, transport=transport)
            self._connections[connection_id] = connection
        logger.debug("Connection registered", total=self.count)
        return connection

    async def authenticate(self, connection_id: str, user_id: str) -> AuthResult:
        """
        Bind a connection to a user and subscribe it to the user's personal room.

        Idempotent for the same user. Rebinding to a different user drops the
        connection from the previous user's set and purges all its rooms first,
        so nothing subscribed under the old identity survives.

        Raises:
            ConnectionError: The user already has the maximum number of
                connections. The connection is left unchanged.
        """
        while True:
            connection = self.get(connection_id)
            if connection is None:
                return _NOT_FOUND
            previous = connection.user_id
            if previous == user_id:
                return AuthResult(authenticated=True)

            users = [user_id] if previous is None else [user_id, previous]
            async with self._locks.user_locks(users):
                with self._index_lock:
                    if self._connections.get(connection_id) is not connection:
                        return _NOT_FOUND
                    if connection.user_id != previous:
                        # Rebound concurrently; retry with the right locks
                        continue

                    owned = self._by_user.get(user_id, set())
                    if len(owned) >= self._max_per_user:
                        raise ConnectionError(
                            f"User has reached the limit of {self._max_per_user} connections"
                        )

                    previous_last = False
                    if previous is not None:
                        previous_last = self._discard_from_user(previous, connection_id)

                    owned.add(connection_id)
                    self._by_user[user_id] = owned
                    first = len(owned) == 1
                    connection.user_id = user_id
                    connection.state = ConnectionState.AUTHENTICATED

                if previous is not None:
                    self._rooms.purge(connection_id)
                self._rooms.join(connection_id, personal_room(user_id))

            logger.info(
                "Connection authenticated",
                user_id=mask_user_id(user_id),
                first_connection=first,
                rebound=previous is not None,
            )
            return AuthResult(
                authenticated=True,
                first_connection=first,
                previous_user_id=previous,
                previous_last=previous_last,
            )

    async def deauthenticate(self, connection_id: str) -> UnregisterResult:
        """
        Unbind the user from a connection without removing the connection.

        Purges all rooms; the connection returns to CONNECTED.
        """
        connection = self.get(connection_id)
        if connection is None or connection.user_id is None:
            return _NO_OP
        user_id = connection.user_id

        async with self._locks.user_locks([user_id]):
            with self._index_lock:
                if self._connections.get(connection_id) is not connection or connection.user_id != user_id:
                    return _NO_OP
                last = self._discard_from_user(user_id, connection_id)
                connection.user_id = None
                connection.state = ConnectionState.CONNECTED
            self._rooms.purge(connection_id)

        logger.info("Connection deauthenticated", user_id=mask_user_id(user_id), last_connection=last)
        return UnregisterResult(user_id=user_id, last_connection=last)

    async def unregister(self, connection_id: str) -> UnregisterResult:
        """
        Remove a connection, its identity binding and all its subscriptions.

        Unknown or already removed ids return last_connection=False and leave
        every counter untouched.
        """
        connection = self.get(connection_id)
        if connection is None:
            return _NO_OP
        user_id = connection.user_id

        if user_id is None:
            with self._index_lock:
                if self._connections.get(connection_id) is not connection:
                    return _NO_OP
                if connection.user_id is None:
                    del self._connections[connection_id]
                    connection.state = ConnectionState.CLOSED
                    self._rooms.purge(connection_id)
                    return _NO_OP
            # Authenticated in the meantime
            return await self.unregister(connection_id)

        async with self._locks.user_locks([user_id]):
            with self._index_lock:
                if self._connections.get(connection_id) is not connection:
                    return _NO_OP
                if connection.user_id != user_id:
                    rebound = True
                else:
                    rebound = False
                    del self._connections[connection_id]
                    last = self._discard_from_user(user_id, connection_id)
                    connection.state = ConnectionState.CLOSED
            if not rebound:
                self._rooms.purge(connection_id)

        if rebound:
            return await self.unregister(connection_id)

        logger.debug("Connection unregistered", user_id=mask_user_id(user_id), last_connection=last)
        return UnregisterResult(user_id=user_id, last_connection=last)

    def _discard_from_user(self, user_id: str, connection_id: str) -> bool:
        """Drop a connection from a user's set. Caller holds _index_lock. True if it was the last."""
        owned = self._by_user.get(user_id)
        if owned is None or connection_id not in owned:
            return False
        owned.discard(connection_id)
        if not owned:
            del self._by_user[user_id]
            return True
        return False

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, connection_id: str) -> Connection | None:
        with self._index_lock:
            return self._connections.get(connection_id)

    def user_of(self, connection_id: str) -> str | None:
        with self._index_lock:
            connection = self._connections.get(connection_id)
            return connection.user_id if connection is not None else None

    def connections_of(self, user_id: str) -> set[Connection]:
        """Copy of the user's live connections; empty when unknown."""
        with self._index_lock:
            ids = self._by_user.get(user_id, ())
            return {self._connections[cid] for cid in ids if cid in self._connections}

    def is_online(self, user_id: str) -> bool:
        with self._index_lock:
            return user_id in self._by_user

    def online_user_ids(self) -> set[str]:
        with self._index_lock:
            return set(self._by_user)

    def all_connection_ids(self) -> list[str]:
        with self._index_lock:
            return list(self._connections)

    @property
    def count(self) -> int:
        with self._index_lock:
            return len(self._connections)

    def get_stats(self) -> dict[str, int]:
        with self._index_lock:
            authenticated = sum(1 for c in self._connections.values() if c.user_id is not None)
            return {
                "total_connections": len(self._connections),
                "authenticated_connections": authenticated,
                "online_users": len(self._by_user),
            }
