"""
Room Membership Table.

Bidirectional index between rooms and the connections subscribed to them:
- room_id -> set[connection_id]
- connection_id -> set[room_id]

Both directions are mutated under one threading.Lock, so a reader never
observes a room that lists a connection whose reverse entry is gone (or the
other way round). Readers always get snapshots.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable

logger = logging.getLogger(__name__)


class RoomMembershipTable:
    """
    Tracks which connections are subscribed to which rooms.

    All operations are idempotent and never fail for unknown ids. Rooms have
    no existence beyond their subscribers: the last leave removes the room.
    """

    def __init__(self) -> None:
        self._by_room: dict[str, set[str]] = {}
        self._by_connection: dict[str, set[str]] = {}
        self._lock = threading.Lock()

    def join(self, connection_id: str, rooms: str | Iterable[str]) -> set[str]:
        """
        Subscribe a connection to one or more rooms.

        Returns:
            The rooms that were newly joined.
        """
        if isinstance(rooms, str):
            rooms = (rooms,)

        joined: set[str] = set()
        with self._lock:
            subscribed = self._by_connection.setdefault(connection_id, set())
            for room in rooms:
                if room in subscribed:
                    continue
                subscribed.add(room)
                self._by_room.setdefault(room, set()).add(connection_id)
                joined.add(room)
        return joined

    def leave(self, connection_id: str, room: str) -> bool:
        """
        Unsubscribe a connection from a room.

        Returns:
            True if the connection was subscribed.
        """
        with self._lock:
            subscribed = self._by_connection.get(connection_id)
            if not subscribed or room not in subscribed:
                return False
            subscribed.discard(room)
            if not subscribed:
                del self._by_connection[connection_id]
            self._discard_subscriber(room, connection_id)
            return True

    def purge(self, connection_id: str) -> set[str]:
        """
        Drop every subscription of a connection.

        Returns:
            The rooms the connection was subscribed to.
        """
        with self._lock:
            rooms = self._by_connection.pop(connection_id, set())
            for room in rooms:
                self._discard_subscriber(room, connection_id)
        if rooms:
            logger.debug("Purged room subscriptions", room_count=len(rooms))
        return rooms

    def subscribers_of(self, room: str) -> set[str]:
        """Snapshot of the connection ids subscribed to a room."""
        with self._lock:
            return set(self._by_room.get(room, ()))

    def rooms_of(self, connection_id: str) -> set[str]:
        """Snapshot of the rooms a connection is subscribed to."""
        with self._lock:
            return set(self._by_connection.get(connection_id, ()))

    def subscribers_of_any(self, rooms: Iterable[str]) -> set[str]:
        """
        Union of the subscribers of several rooms, taken under one lock.

        A connection in more than one of the rooms appears once.
        """
        result: set[str] = set()
        with self._lock:
            for room in rooms:
                subscribers = self._by_room.get(room)
                if subscribers:
                    result.update(subscribers)
        return result

    def _discard_subscriber(self, room: str, connection_id: str) -> None:
        """Remove one subscriber. Caller must hold self._lock."""
        subscribers = self._by_room.get(room)
        if subscribers is None:
            return
        subscribers.discard(connection_id)
        if not subscribers:
            del self._by_room[room]

    @property
    def room_count(self) -> int:
        with self._lock:
            return len(self._by_room)

    def get_stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "rooms": len(self._by_room),
                "subscribed_connections": len(self._by_connection),
                "subscriptions": sum(len(s) for s in self._by_connection.values()),
            }
