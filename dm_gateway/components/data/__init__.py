"""Data access for the gateway."""

from dm_gateway.components.data.user_directory import (
    FRIEND_STATUS_ACCEPTED,
    InMemoryUserDirectory,
    SqlUserDirectory,
    UserDirectory,
    friends_table,
    metadata,
    users_table,
)

__all__ = [
    "FRIEND_STATUS_ACCEPTED",
    "InMemoryUserDirectory",
    "SqlUserDirectory",
    "UserDirectory",
    "friends_table",
    "metadata",
    "users_table",
]
