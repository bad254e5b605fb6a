"""
User directory adapters.

The gateway needs two things from the user store: persisting the presence
flag and listing a user's accepted friends. Both go through the narrow
UserDirectory protocol so the core never touches a database session.

Failures propagate to the caller (the presence tracker), which logs them,
counts them and carries on.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Protocol, runtime_checkable, TYPE_CHECKING

from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    or_,
    select,
    update,
)

from shared.config.logging import mask_user_id
from shared.infrastructure.db import get_db_context

if TYPE_CHECKING:
    from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)

# Friendship status values; only FRIEND_STATUS_ACCEPTED counts for presence
FRIEND_STATUS_ADD = 0
FRIEND_STATUS_REQUESTED = 1
FRIEND_STATUS_PENDING = 2
FRIEND_STATUS_ACCEPTED = 3


@runtime_checkable
class UserDirectory(Protocol):
    """Presence persistence and friend lookup."""

    async def set_online(self, user_id: str, online: bool) -> None: ...

    async def friends_of(self, user_id: str) -> list[str]: ...


# =============================================================================
# In-memory adapter
# =============================================================================


class InMemoryUserDirectory:
    """
    Dictionary-backed directory for local development and tests.

    Friendships are symmetric. set_failures / lookup_failures make the next
    calls raise, to exercise error paths.
    """

    def __init__(self, friendships: dict[str, list[str]] | None = None):
        self._online: dict[str, bool] = {}
        self._friends: dict[str, set[str]] = {}
        self._lock = threading.Lock()
        self.writes: list[tuple[str, bool]] = []
        self.set_failures = 0
        self.lookup_failures = 0
        for user_id, friends in (friendships or {}).items():
            for friend_id in friends:
                self.add_friendship(user_id, friend_id)

    def add_friendship(self, user_id: str, friend_id: str) -> None:
        with self._lock:
            self._friends.setdefault(user_id, set()).add(friend_id)
            self._friends.setdefault(friend_id, set()).add(user_id)

    def remove_friendship(self, user_id: str, friend_id: str) -> None:
        with self._lock:
            self._friends.get(user_id, set()).discard(friend_id)
            self._friends.get(friend_id, set()).discard(user_id)

    def is_online(self, user_id: str) -> bool:
        with self._lock:
            return self._online.get(user_id, False)

    async def set_online(self, user_id: str, online: bool) -> None:
        with self._lock:
            if self.set_failures > 0:
                self.set_failures -= 1
                raise ConnectionError("user directory unavailable")
            self._online[user_id] = online
            self.writes.append((user_id, online))

    async def friends_of(self, user_id: str) -> list[str]:
        with self._lock:
            if self.lookup_failures > 0:
                self.lookup_failures -= 1
                raise ConnectionError("user directory unavailable")
            return sorted(self._friends.get(user_id, ()))


# =============================================================================
# SQL adapter
# =============================================================================

metadata = MetaData()

users_table = Table(
    "users",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("online", Boolean, nullable=False, default=False),
)

friends_table = Table(
    "friends",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("requester_id", String(64), nullable=False, index=True),
    Column("recipient_id", String(64), nullable=False, index=True),
    Column("status", Integer, nullable=False, default=FRIEND_STATUS_ADD),
)


class SqlUserDirectory:
    """
    SQLAlchemy-backed directory.

    The engine is synchronous; every call runs in a worker thread and is
    bounded by `timeout`. A timeout surfaces as asyncio.TimeoutError.
    """

    def __init__(
        self,
        timeout: float = 2.0,
        session_factory: "sessionmaker | None" = None,
    ):
        self._timeout = timeout
        self._session_factory = session_factory
        self._writes = 0
        self._lookups = 0
        self._timeouts = 0

    async def set_online(self, user_id: str, online: bool) -> None:
        await self._run(self._set_online_sync, user_id, online)
        self._writes += 1

    async def friends_of(self, user_id: str) -> list[str]:
        result = await self._run(self._friends_of_sync, user_id)
        self._lookups += 1
        return result

    async def _run(self, func: Any, *args: Any) -> Any:
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self._timeout)
        except asyncio.TimeoutError:
            self._timeouts += 1
            logger.error(
                "User directory call timed out",
                operation=func.__name__,
                user_id=mask_user_id(args[0] if args else None),
                timeout=self._timeout,
            )
            raise

    def _set_online_sync(self, user_id: str, online: bool) -> None:
        with get_db_context(self._session_factory) as db:
            try:
                result = db.execute(
                    update(users_table)
                    .where(users_table.c.id == user_id)
                    .values(online=online)
                )
                db.commit()
            except Exception:
                db.rollback()
                raise
        if result.rowcount == 0:
            logger.warning("Presence update matched no user", user_id=mask_user_id(user_id))

    def _friends_of_sync(self, user_id: str) -> list[str]:
        with get_db_context(self._session_factory) as db:
            rows = db.execute(
                select(friends_table.c.requester_id, friends_table.c.recipient_id).where(
                    friends_table.c.status == FRIEND_STATUS_ACCEPTED,
                    or_(
                        friends_table.c.requester_id == user_id,
                        friends_table.c.recipient_id == user_id,
                    ),
                )
            ).all()
        friends = {
            recipient if requester == user_id else requester
            for requester, recipient in rows
        }
        friends.discard(user_id)
        return sorted(friends)

    def get_stats(self) -> dict[str, Any]:
        return {
            "timeout": self._timeout,
            "writes": self._writes,
            "lookups": self._lookups,
            "timeouts": self._timeouts,
        }
