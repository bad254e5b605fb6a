"""
Event Router - fans events out to the connections subscribed to their rooms.

Usage:
    router = EventRouter(rooms, broadcaster, metrics)
    queued = router.publish(channel_room(channel_id), "receiveMessageUpdate", payload)
    queued = router.publish(Target.of_users(a, b), "receiveChannelCreate", channel)
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from enum import Enum
from typing import Any, TYPE_CHECKING

from dm_gateway.components.events.types import DomainEvent, Target

if TYPE_CHECKING:
    from dm_gateway.components.connection.rooms import RoomMembershipTable
    from dm_gateway.components.metrics.collector import MetricsCollector
    from dm_gateway.core.connection.broadcaster import ConnectionBroadcaster

logger = logging.getLogger(__name__)


def build_frame(kind: str | Enum, payload: Any) -> dict[str, Any]:
    """Wire frame delivered to clients: {"type": kind, "data": payload}."""
    if isinstance(kind, Enum):
        kind = kind.value
    return {"type": kind, "data": payload}


class EventRouter:
    """
    Routes events to connections.

    Every target is resolved to a set of rooms, the rooms to the union of
    their subscribers, and each subscribing connection gets the event
    exactly once even when it is in several of the target rooms. Delivery
    is queued per connection; one connection failing never affects another.
    """

    def __init__(
        self,
        rooms: "RoomMembershipTable",
        broadcaster: "ConnectionBroadcaster",
        metrics: "MetricsCollector",
    ):
        self._rooms = rooms
        self._broadcaster = broadcaster
        self._metrics = metrics

    def publish(
        self,
        target: Target | str | Iterable[str],
        event_kind: str | Enum,
        payload: Any,
        *,
        exclude: str | None = None,
    ) -> int:
        """
        Publish an event to every connection subscribed to the target.

        Args:
            target: A room id, an iterable of room ids, or a Target.
            event_kind: Event name delivered as the frame's "type".
            payload: JSON-serializable data delivered as the frame's "data".
                The same object is shared by every recipient; do not mutate it
                after publishing.
            exclude: Connection id that must not receive the event (the sender
                of a relayed message).

        Returns:
            Number of connections the event was queued for.
        """
        resolved = Target.coerce(target).resolve_rooms()
        if not resolved:
            return 0

        subscribers = self._rooms.subscribers_of_any(resolved)
        if exclude is not None:
            subscribers.discard(exclude)

        frame = build_frame(event_kind, payload)
        queued = 0
        for connection_id in subscribers:
            if self._broadcaster.enqueue(connection_id, frame):
                queued += 1

        self._metrics.record_publish(queued)
        if queued:
            logger.debug(
                "Dispatched event",
                event_type=frame["type"],
                rooms=len(resolved),
                clients=queued,
            )
        return queued

    def publish_event(self, event: DomainEvent) -> int:
        """Publish a validated event from the write path. Unknown kinds are forwarded unchanged."""
        if not event.is_known_kind:
            logger.debug("Forwarding unknown event kind", event_kind=event.kind)
        return self.publish(event.target, event.kind, event.data)

    def send_to_connection(self, connection_id: str, event_kind: str | Enum, payload: Any) -> bool:
        """Queue an event for a single connection, bypassing rooms."""
        return self._broadcaster.enqueue(connection_id, build_frame(event_kind, payload))
