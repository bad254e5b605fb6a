"""
Event System for Real-time Notifications via Redis pub/sub.

This package provides:
- event_types.py: Event kind constants
- rooms.py: Room naming conventions
- event_schema.py: Event dataclass with validation
- redis_pool.py: Connection pool management
- publisher.py: Core publish_event with retry
- domain_publishers.py: Channel, message and friend event publishers
"""

from .event_types import (
    RECEIVE_ONLINE,
    RECEIVE_FRIEND_ONLINE,
    RECEIVE_FRIEND_OFFLINE,
    RECEIVE_CHANNEL_CREATE,
    RECEIVE_CHANNEL_UPDATE,
    RECEIVE_CHANNEL_DELETE,
    RECEIVE_MESSAGE,
    RECEIVE_MESSAGE_UPDATE,
    RECEIVE_FRIEND_REQUEST,
    RECEIVE_FRIEND_ACCEPT,
    RECEIVE_FRIEND_REMOVE,
    ACTION_CREATED,
    ACTION_UPDATED,
    ACTION_DELETED,
    MAX_EVENT_SIZE,
)
from .rooms import channel_room, personal_room
from .event_schema import Event
from .redis_pool import get_redis_pool, close_redis_pool
from .publisher import publish_event, calculate_retry_delay_with_jitter
from .domain_publishers import (
    build_channel_event,
    build_message_event,
    build_friend_event,
    publish_channel_event,
    publish_message_event,
    publish_friend_event,
)

__all__ = [
    # Event kinds
    "RECEIVE_ONLINE",
    "RECEIVE_FRIEND_ONLINE",
    "RECEIVE_FRIEND_OFFLINE",
    "RECEIVE_CHANNEL_CREATE",
    "RECEIVE_CHANNEL_UPDATE",
    "RECEIVE_CHANNEL_DELETE",
    "RECEIVE_MESSAGE",
    "RECEIVE_MESSAGE_UPDATE",
    "RECEIVE_FRIEND_REQUEST",
    "RECEIVE_FRIEND_ACCEPT",
    "RECEIVE_FRIEND_REMOVE",
    "ACTION_CREATED",
    "ACTION_UPDATED",
    "ACTION_DELETED",
    "MAX_EVENT_SIZE",
    # Rooms
    "channel_room",
    "personal_room",
    # Schema
    "Event",
    # Redis
    "get_redis_pool",
    "close_redis_pool",
    # Publishing
    "publish_event",
    "calculate_retry_delay_with_jitter",
    "build_channel_event",
    "build_message_event",
    "build_friend_event",
    "publish_channel_event",
    "publish_message_event",
    "publish_friend_event",
]
