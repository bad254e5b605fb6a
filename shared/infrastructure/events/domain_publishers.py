"""
Domain-Specific Event Publishing Functions.

High-level helpers the REST handlers call after a channel, message or
friendship mutation has been persisted.
"""

from __future__ import annotations

from typing import Any, Iterable

import redis.asyncio as redis

from .event_types import (
    ACTION_CREATED,
    ACTION_DELETED,
    ACTION_UPDATED,
    RECEIVE_CHANNEL_CREATE,
    RECEIVE_CHANNEL_DELETE,
    RECEIVE_CHANNEL_UPDATE,
    RECEIVE_FRIEND_ACCEPT,
    RECEIVE_FRIEND_REMOVE,
    RECEIVE_FRIEND_REQUEST,
    RECEIVE_MESSAGE_UPDATE,
    VALID_ACTIONS,
)
from .event_schema import Event
from .publisher import publish_event
from .rooms import channel_room

_CHANNEL_KINDS = {
    ACTION_CREATED: RECEIVE_CHANNEL_CREATE,
    ACTION_UPDATED: RECEIVE_CHANNEL_UPDATE,
    ACTION_DELETED: RECEIVE_CHANNEL_DELETE,
}

_FRIEND_KINDS = {
    "requested": RECEIVE_FRIEND_REQUEST,
    "accepted": RECEIVE_FRIEND_ACCEPT,
    "removed": RECEIVE_FRIEND_REMOVE,
}


def build_channel_event(
    action: str,
    channel_id: str,
    member_ids: Iterable[str],
    channel: dict[str, Any] | None = None,
) -> Event:
    """
    Event for a channel created/updated/deleted.

    Targets the channel room and every member's personal room, so members
    that have not opened the channel yet still learn about it. Connections
    reachable through both receive it once.
    """
    if action not in _CHANNEL_KINDS:
        raise ValueError(f"Unknown channel action: {action}")
    return Event(
        kind=_CHANNEL_KINDS[action],
        rooms=[channel_room(channel_id)],
        user_ids=sorted(set(member_ids)),
        data={"action": action, "channelId": channel_id, "channel": channel or {}},
    )


def build_message_event(
    action: str,
    channel_id: str,
    message: dict[str, Any] | None = None,
    message_id: str | None = None,
) -> Event:
    """Event for a message created/updated/deleted in a channel."""
    if action not in VALID_ACTIONS:
        raise ValueError(f"Unknown message action: {action}")
    message = message or {}
    return Event(
        kind=RECEIVE_MESSAGE_UPDATE,
        rooms=[channel_room(channel_id)],
        data={
            "action": action,
            "channelId": channel_id,
            "messageId": message_id or message.get("id") or message.get("_id"),
            "message": message,
        },
    )


def build_friend_event(
    action: str,
    counterparty_id: str,
    friend: dict[str, Any] | None = None,
) -> Event:
    """Event for a friend request created/accepted/removed, sent to the other user."""
    if action not in _FRIEND_KINDS:
        raise ValueError(f"Unknown friend action: {action}")
    return Event(
        kind=_FRIEND_KINDS[action],
        user_ids=[counterparty_id],
        data={"action": action, "friend": friend or {}},
    )


async def publish_channel_event(
    redis_client: redis.Redis,
    action: str,
    channel_id: str,
    member_ids: Iterable[str],
    channel: dict[str, Any] | None = None,
) -> int:
    """Publish a channel mutation to the gateway."""
    event = build_channel_event(action, channel_id, member_ids, channel)
    return await publish_event(redis_client, event)


async def publish_message_event(
    redis_client: redis.Redis,
    action: str,
    channel_id: str,
    message: dict[str, Any] | None = None,
    message_id: str | None = None,
) -> int:
    """Publish a message mutation to the gateway."""
    event = build_message_event(action, channel_id, message, message_id)
    return await publish_event(redis_client, event)


async def publish_friend_event(
    redis_client: redis.Redis,
    action: str,
    counterparty_id: str,
    friend: dict[str, Any] | None = None,
) -> int:
    """Publish a friendship mutation to the counterparty."""
    event = build_friend_event(action, counterparty_id, friend)
    return await publish_event(redis_client, event)
