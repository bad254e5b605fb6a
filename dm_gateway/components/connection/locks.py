"""
Lock Manager for the realtime gateway.

Hands out one asyncio.Lock per user so that presence edges for a user are
computed atomically with the registry mutation that caused them, without a
global lock serialising unrelated users.

LOCK ORDERING:
==============
Operations touching more than one user (rebinding a connection from one
identity to another) MUST go through user_locks(), which acquires the locks
in sorted user-id order. Acquiring two user locks by hand in arbitrary order
can deadlock against a concurrent rebind in the opposite direction.

The _meta_lock is NON-REENTRANT. Methods that acquire it must not call other
methods that acquire it; cleanup is scheduled as a separate task instead.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable, Set
from contextlib import AsyncExitStack, asynccontextmanager

from dm_gateway.components.core.constants import WSConstants

logger = logging.getLogger(__name__)


class LockManager:
    """
    Manages per-user asyncio locks.

    Locks are created on demand and cached; when the cache passes the cleanup
    threshold, unheld locks are evicted in a deferred task.
    """

    def __init__(
        self,
        max_cached_locks: int = WSConstants.MAX_CACHED_LOCKS,
        cleanup_threshold: int = WSConstants.LOCK_CLEANUP_THRESHOLD,
    ):
        self._max_cached_locks = max_cached_locks
        self._cleanup_threshold = cleanup_threshold

        self._user_locks: dict[str, asyncio.Lock] = {}

        # Meta-lock for the lock dictionary itself
        self._meta_lock = asyncio.Lock()

        self._dead_connections_lock = asyncio.Lock()

        self._locks_cleaned = 0

        self._cleanup_task: asyncio.Task | None = None
        self._cleanup_pending = False

    @property
    def dead_connections_lock(self) -> asyncio.Lock:
        """Lock for the dead connections set."""
        return self._dead_connections_lock

    @property
    def user_lock_count(self) -> int:
        """Number of user locks currently cached."""
        return len(self._user_locks)

    @property
    def locks_cleaned_total(self) -> int:
        """Total number of locks cleaned since startup."""
        return self._locks_cleaned

    async def get_user_lock(self, user_id: str) -> asyncio.Lock:
        """
        Get or create the lock for a user.

        Cleanup is scheduled, never executed, while the meta lock is held.
        """
        needs_cleanup = False

        async with self._meta_lock:
            lock = self._user_locks.get(user_id)
            if lock is not None:
                return lock

            if len(self._user_locks) >= self._cleanup_threshold:
                needs_cleanup = True
            lock = asyncio.Lock()
            self._user_locks[user_id] = lock

        if needs_cleanup:
            self._schedule_cleanup()

        return lock

    @asynccontextmanager
    async def user_locks(self, user_ids: Iterable[str]) -> AsyncIterator[None]:
        """
        Hold the locks of every given user for the duration of the block.

        Duplicates are ignored and locks are taken in sorted order.

        Usage:
            async with lock_manager.user_locks([old_user_id, new_user_id]):
                ...
        """
        async with AsyncExitStack() as stack:
            for user_id in sorted(set(user_ids)):
                lock = await self.get_user_lock(user_id)
                await stack.enter_async_context(lock)
            yield

    def _schedule_cleanup(self) -> None:
        """Schedule a deferred cleanup task if one isn't already pending."""
        if self._cleanup_pending:
            return

        if self._cleanup_task is not None:
            if not self._cleanup_task.done():
                return
            self._cleanup_task = None

        self._cleanup_pending = True
        self._cleanup_task = asyncio.create_task(
            self._deferred_cleanup_wrapper(),
            name="deferred_lock_cleanup",
        )

    async def _deferred_cleanup_wrapper(self) -> None:
        try:
            await self._deferred_cleanup()
        finally:
            self._cleanup_pending = False
            self._cleanup_task = None

    async def await_pending_cleanup(self) -> None:
        """Wait for a pending cleanup task. Call during shutdown."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            try:
                await asyncio.wait_for(self._cleanup_task, timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("Lock cleanup task timed out during shutdown")
                self._cleanup_task.cancel()
                try:
                    await self._cleanup_task
                except asyncio.CancelledError:
                    pass

    async def _deferred_cleanup(self) -> None:
        try:
            async with self._meta_lock:
                cleaned = self._cleanup_unheld_locks()
                if cleaned > 0:
                    self._locks_cleaned += cleaned
                    logger.debug("Deferred lock cleanup completed", user_cleaned=cleaned)
        except Exception as e:
            logger.warning("Deferred lock cleanup failed", error=str(e))

    def _cleanup_unheld_locks(self) -> int:
        """
        Evict unheld locks, oldest first, down to the hysteresis target.

        Only runs while the cache is over the threshold. Locks are recreated on
        demand, so evicting an unheld lock is always safe.
        """
        if len(self._user_locks) < self._cleanup_threshold:
            return 0

        target_count = int(self._cleanup_threshold * WSConstants.LOCK_CLEANUP_HYSTERESIS_RATIO)
        to_remove = len(self._user_locks) - target_count
        if to_remove <= 0:
            return 0

        keys_to_remove = [
            key for key, lock in list(self._user_locks.items())
            if not lock.locked()
        ][:to_remove]

        cleaned = 0
        for key in keys_to_remove:
            lock = self._user_locks.get(key)
            if lock is not None and not lock.locked():
                del self._user_locks[key]
                cleaned += 1
        return cleaned

    async def cleanup_stale_locks(self, active_users: Set[str]) -> int:
        """
        Remove locks for users with no active connections.

        Args:
            active_users: User ids that currently own at least one connection.

        Returns:
            Number of locks cleaned up.
        """
        async with self._meta_lock:
            stale = [uid for uid in self._user_locks if uid not in active_users]
            cleaned = 0
            for uid in stale:
                lock = self._user_locks.get(uid)
                if lock is not None and not lock.locked():
                    del self._user_locks[uid]
                    cleaned += 1

            if cleaned > 0:
                self._locks_cleaned += cleaned
                logger.info("Cleaned up stale locks", user_locks_cleaned=cleaned)

            return cleaned

    def get_stats(self) -> dict[str, int]:
        """Get lock manager statistics."""
        return {
            "user_locks_count": len(self._user_locks),
            "locks_cleaned_total": self._locks_cleaned,
            "max_cached_locks": self._max_cached_locks,
            "cleanup_threshold": self._cleanup_threshold,
        }
