"""
Connection components: locks, registry, room membership and heartbeat.
"""

from dm_gateway.components.connection.locks import LockManager
from dm_gateway.components.connection.rooms import RoomMembershipTable
from dm_gateway.components.connection.registry import (
    AuthResult,
    Connection,
    ConnectionRegistry,
    ConnectionState,
    UnregisterResult,
)
from dm_gateway.components.connection.heartbeat import handle_heartbeat, is_heartbeat

__all__ = [
    "LockManager",
    "RoomMembershipTable",
    "AuthResult",
    "Connection",
    "ConnectionRegistry",
    "ConnectionState",
    "UnregisterResult",
    "handle_heartbeat",
    "is_heartbeat",
]
