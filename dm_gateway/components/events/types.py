"""
Event value objects for the realtime gateway.

EventKind lists the kinds clients know about; Target describes who an event
is for; DomainEvent is a validated event arriving from the write path.
"""

from __future__ import annotations

import copy
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Self

from dm_gateway.components.core.constants import WSConstants
from shared.infrastructure.events.rooms import personal_room


class EventKind(str, Enum):
    """
    Event kinds delivered to clients.

    Synchronized with shared/infrastructure/events/event_types.py.
    """

    # Presence
    RECEIVE_ONLINE = "receiveOnline"
    RECEIVE_FRIEND_ONLINE = "receiveFriendOnline"
    RECEIVE_FRIEND_OFFLINE = "receiveFriendOffline"

    # Channels
    RECEIVE_CHANNEL_CREATE = "receiveChannelCreate"
    RECEIVE_CHANNEL_UPDATE = "receiveChannelUpdate"
    RECEIVE_CHANNEL_DELETE = "receiveChannelDelete"

    # Messages
    RECEIVE_MESSAGE = "receiveMessage"
    RECEIVE_MESSAGE_UPDATE = "receiveMessageUpdate"

    # Friends
    RECEIVE_FRIEND_REQUEST = "receiveFriendRequest"
    RECEIVE_FRIEND_ACCEPT = "receiveFriendAccept"
    RECEIVE_FRIEND_REMOVE = "receiveFriendRemove"


VALID_EVENT_KINDS: frozenset[str] = frozenset(k.value for k in EventKind)


def _clean_ids(values: Any, name: str) -> frozenset[str]:
    if values is None:
        return frozenset()
    if isinstance(values, str) or not isinstance(values, (list, tuple, set, frozenset)):
        raise ValueError(f"{name} must be a list of strings")
    if any(not isinstance(v, str) or not v.strip() for v in values):
        raise ValueError(f"{name} must contain non-empty strings")
    return frozenset(values)


@dataclass(frozen=True, slots=True)
class Target:
    """
    Addressee of an event: rooms and/or users.

    Users resolve to their personal rooms, so a user with several open
    connections receives the event on every one of them.

    Usage:
        Target.of_rooms(channel_room("c1"))
        Target.of_users("u1", "u2")
        Target(rooms=frozenset({"channel:c1"}), user_ids=frozenset({"u3"}))
    """

    rooms: frozenset[str] = field(default_factory=frozenset)
    user_ids: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def of_rooms(cls, *rooms: str) -> Self:
        return cls(rooms=frozenset(rooms))

    @classmethod
    def of_users(cls, *user_ids: str) -> Self:
        return cls(user_ids=frozenset(user_ids))

    @classmethod
    def coerce(cls, target: Target | str | Iterable[str]) -> Target:
        """Accept a Target, a single room id, or an iterable of room ids."""
        if isinstance(target, Target):
            return target
        if isinstance(target, str):
            return cls(rooms=frozenset((target,)))
        return cls(rooms=frozenset(target))

    def resolve_rooms(self) -> set[str]:
        """Union of the explicit rooms and the users' personal rooms."""
        rooms = set(self.rooms)
        rooms.update(personal_room(uid) for uid in self.user_ids)
        return rooms

    def __bool__(self) -> bool:
        return bool(self.rooms or self.user_ids)


@dataclass(frozen=True, slots=True)
class DomainEvent:
    """
    Validated event from the write path.

    Wire format (see shared.infrastructure.events.Event):
        {"kind": str, "rooms": [str], "user_ids": [str], "data": {...},
         "ts": str | None, "v": int}

    Unknown kinds are accepted and forwarded for forward compatibility.
    """

    kind: str
    target: Target
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """
        Build a DomainEvent from a decoded payload.

        Raises:
            ValueError: If the payload fails validation.
        """
        if not isinstance(data, dict):
            raise ValueError("Event must be a dictionary")

        kind = data.get("kind")
        if not isinstance(kind, str) or not kind:
            raise ValueError("Event kind must be a non-empty string")

        rooms = _clean_ids(data.get("rooms"), "rooms")
        user_ids = _clean_ids(data.get("user_ids"), "user_ids")
        if not rooms and not user_ids:
            raise ValueError("Event must target at least one room or user")
        if len(rooms) + len(user_ids) > WSConstants.MAX_ROOMS_PER_EVENT:
            raise ValueError(
                f"Event targets {len(rooms) + len(user_ids)} rooms, "
                f"max is {WSConstants.MAX_ROOMS_PER_EVENT}"
            )

        payload = data.get("data")
        if payload is None:
            payload = {}
        elif not isinstance(payload, dict):
            raise ValueError(f"Event data must be a dict, got {type(payload).__name__}")

        return cls(
            kind=kind,
            target=Target(rooms=rooms, user_ids=user_ids),
            data=copy.deepcopy(payload),
            timestamp=data.get("ts"),
        )

    @property
    def is_known_kind(self) -> bool:
        return self.kind in VALID_EVENT_KINDS
