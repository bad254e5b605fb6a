"""
Room naming.

Personal rooms carry account-level notifications for one user; channel
rooms carry message and channel updates for everyone viewing a channel.
Both sides of the event bus build room names through these functions.
"""

from __future__ import annotations

PERSONAL_ROOM_PREFIX = "user:"
CHANNEL_ROOM_PREFIX = "channel:"


def _validate_id(id_value: str, name: str) -> str:
    """Validate that an id is a non-empty string and return it stripped."""
    if not isinstance(id_value, str) or not id_value.strip():
        raise ValueError(f"{name} must be a non-empty string, got {id_value!r}")
    return id_value.strip()


def personal_room(user_id: str) -> str:
    """Room every authenticated connection of a user is subscribed to."""
    return f"{PERSONAL_ROOM_PREFIX}{_validate_id(user_id, 'user_id')}"


def channel_room(channel_id: str) -> str:
    """Room for a channel's live message and membership updates."""
    return f"{CHANNEL_ROOM_PREFIX}{_validate_id(channel_id, 'channel_id')}"
