"""
Event components: kinds, targets and the router.
"""

from dm_gateway.components.events.types import (
    DomainEvent,
    EventKind,
    Target,
    VALID_EVENT_KINDS,
)
from dm_gateway.components.events.router import EventRouter, build_frame

__all__ = [
    "DomainEvent",
    "EventKind",
    "Target",
    "VALID_EVENT_KINDS",
    "EventRouter",
    "build_frame",
]
