"""
Metrics Collector for the realtime gateway.

Counters are incremented from synchronous hot paths (publish, enqueue), so
every operation takes a threading.Lock and never awaits.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, asdict
from typing import Any


@dataclass
class ConnectionMetrics:
    """Metrics for connection management."""
    accepted: int = 0
    rejected_auth: int = 0
    rejected_limit: int = 0
    timeouts: int = 0


@dataclass
class DeliveryMetrics:
    """Metrics for event fanout."""
    events_published: int = 0
    deliveries_queued: int = 0
    deliveries_sent: int = 0
    deliveries_failed: int = 0
    deliveries_dropped: int = 0


@dataclass
class PresenceMetrics:
    """Metrics for presence transitions."""
    online_transitions: int = 0
    offline_transitions: int = 0
    write_failures: int = 0
    lookup_failures: int = 0


@dataclass
class BridgeMetrics:
    """Metrics for events arriving from the write path."""
    received: int = 0
    invalid: int = 0


class MetricsCollector:
    """
    Thread-safe metrics collector.

    Usage:
        metrics = MetricsCollector()
        metrics.increment_delivery_sent()
        stats = metrics.get_snapshot()
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connection = ConnectionMetrics()
        self._delivery = DeliveryMetrics()
        self._presence = PresenceMetrics()
        self._bridge = BridgeMetrics()
        self._locks_cleaned = 0
        self._dead_cleaned = 0

    # ==========================================================================
    # Connections
    # ==========================================================================

    def increment_connection_accepted(self) -> None:
        with self._lock:
            self._connection.accepted += 1

    def increment_connection_rejected_auth(self) -> None:
        with self._lock:
            self._connection.rejected_auth += 1

    def increment_connection_rejected_limit(self) -> None:
        with self._lock:
            self._connection.rejected_limit += 1

    def increment_connection_timeouts(self) -> None:
        with self._lock:
            self._connection.timeouts += 1

    # ==========================================================================
    # Delivery
    # ==========================================================================

    def record_publish(self, queued: int) -> None:
        """Record one published event and the connections it was queued for."""
        with self._lock:
            self._delivery.events_published += 1
            self._delivery.deliveries_queued += queued

    def increment_delivery_sent(self) -> None:
        with self._lock:
            self._delivery.deliveries_sent += 1

    def increment_delivery_failed(self) -> None:
        with self._lock:
            self._delivery.deliveries_failed += 1

    def increment_delivery_dropped(self, count: int = 1) -> None:
        with self._lock:
            self._delivery.deliveries_dropped += count

    # ==========================================================================
    # Presence
    # ==========================================================================

    def increment_presence_transition(self, online: bool) -> None:
        with self._lock:
            if online:
                self._presence.online_transitions += 1
            else:
                self._presence.offline_transitions += 1

    def increment_presence_write_failures(self) -> None:
        with self._lock:
            self._presence.write_failures += 1

    def increment_presence_lookup_failures(self) -> None:
        with self._lock:
            self._presence.lookup_failures += 1

    # ==========================================================================
    # Bridge
    # ==========================================================================

    def increment_bridge_received(self) -> None:
        with self._lock:
            self._bridge.received += 1

    def increment_bridge_invalid(self) -> None:
        with self._lock:
            self._bridge.invalid += 1

    # ==========================================================================
    # Cleanup
    # ==========================================================================

    def add_locks_cleaned(self, count: int) -> None:
        with self._lock:
            self._locks_cleaned += count

    def add_dead_connections_cleaned(self, count: int) -> None:
        with self._lock:
            self._dead_cleaned += count

    def get_snapshot(self) -> dict[str, Any]:
        """Get a snapshot of all metrics."""
        with self._lock:
            return {
                "connections": asdict(self._connection),
                "delivery": asdict(self._delivery),
                "presence": asdict(self._presence),
                "bridge": asdict(self._bridge),
                "locks_cleaned": self._locks_cleaned,
                "dead_connections_cleaned": self._dead_cleaned,
            }
