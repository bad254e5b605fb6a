"""
Connection core: lifecycle, per-connection delivery and dead connection cleanup.
"""

from dm_gateway.core.connection.broadcaster import ConnectionBroadcaster
from dm_gateway.core.connection.cleanup import ConnectionCleanup
from dm_gateway.core.connection.lifecycle import ConnectionLifecycle, ConnectionState

__all__ = [
    "ConnectionBroadcaster",
    "ConnectionCleanup",
    "ConnectionLifecycle",
    "ConnectionState",
]
