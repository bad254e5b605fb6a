"""
Presence Tracker.

Turns the registry's presence edges into a persisted online flag and a
receiveFriendOnline / receiveFriendOffline notification to every friend.

The registry detects edges under the user's lock; the tracker runs the slow
part (directory write, friend lookup, fanout) afterwards in background tasks.
Transitions of one user are chained, each waiting for the previous one, so
an online write can never land after the offline write that followed it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from dm_gateway.components.core.constants import WSConstants
from dm_gateway.components.events.types import EventKind, Target
from shared.config.logging import mask_user_id

if TYPE_CHECKING:
    from dm_gateway.components.data.user_directory import UserDirectory
    from dm_gateway.components.events.router import EventRouter
    from dm_gateway.components.metrics.collector import MetricsCollector

logger = logging.getLogger(__name__)


class PresenceTracker:
    """
    Persists presence and notifies friends.

    Never raises to the caller: a failed write is logged and the fanout still
    happens; a failed friend lookup is logged and nothing is fanned out.
    """

    def __init__(
        self,
        directory: "UserDirectory",
        router: "EventRouter",
        metrics: "MetricsCollector",
    ):
        self._directory = directory
        self._router = router
        self._metrics = metrics
        # Last scheduled transition per user; the next one waits for it
        self._tail: dict[str, asyncio.Task] = {}
        self._pending: set[asyncio.Task] = set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def mark_online(self, user_id: str) -> int:
        """Persist online=True and notify friends. Returns connections notified."""
        return await self._transition(user_id, online=True)

    async def mark_offline(self, user_id: str) -> int:
        """Persist online=False and notify friends. Returns connections notified."""
        return await self._transition(user_id, online=False)

    async def _transition(self, user_id: str, online: bool) -> int:
        self._metrics.increment_presence_transition(online)

        try:
            await self._directory.set_online(user_id, online)
        except Exception as e:
            self._metrics.increment_presence_write_failures()
            logger.warning(
                "Failed to persist presence",
                user_id=mask_user_id(user_id),
                online=online,
                error=str(e),
                exc_info=True,
            )

        try:
            friends = await self._directory.friends_of(user_id)
        except Exception as e:
            self._metrics.increment_presence_lookup_failures()
            logger.warning(
                "Failed to look up friends, skipping presence fanout",
                user_id=mask_user_id(user_id),
                online=online,
                error=str(e),
                exc_info=True,
            )
            return 0

        kind = EventKind.RECEIVE_FRIEND_ONLINE if online else EventKind.RECEIVE_FRIEND_OFFLINE
        target = Target(user_ids=frozenset(f for f in friends if f))
        notified = self._router.publish(target, kind, {"userId": user_id, "online": online})
        logger.info(
            "Presence changed",
            user_id=mask_user_id(user_id),
            online=online,
            friends=len(friends),
            notified=notified,
        )
        return notified

    def schedule(self, user_id: str, online: bool) -> asyncio.Task:
        """
        Run a transition in the background, after the user's previous one.

        Call synchronously right after the registry reports the edge, with no
        await in between, so transitions are queued in edge order.
        """
        previous = self._tail.get(user_id)
        task = asyncio.create_task(
            self._run_after(previous, user_id, online),
            name=f"presence_{'online' if online else 'offline'}",
        )
        self._tail[user_id] = task
        self._pending.add(task)
        task.add_done_callback(lambda t: self._on_done(user_id, t))
        return task

    async def _run_after(self, previous: asyncio.Task | None, user_id: str, online: bool) -> None:
        if previous is not None and not previous.done():
            # wait() does not propagate the previous task's cancellation
            await asyncio.wait({previous})
        await self._transition(user_id, online)

    def _on_done(self, user_id: str, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if self._tail.get(user_id) is task:
            del self._tail[user_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Presence transition crashed",
                user_id=mask_user_id(user_id),
                error=str(task.exception()),
            )

    async def drain(self, timeout: float | None = WSConstants.PRESENCE_DRAIN_TIMEOUT) -> None:
        """Wait for every scheduled transition, including ones scheduled meanwhile."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._pending:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                logger.warning("Presence drain timed out", pending=len(self._pending))
                return
            await asyncio.wait(set(self._pending), timeout=remaining)
