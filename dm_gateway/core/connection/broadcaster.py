"""
Connection Broadcaster.

Owns one bounded outbox (asyncio.Queue) and one writer task per connection.
Publishing only enqueues, so a slow or dead client never stalls the publisher
or its sibling connections:

- a full outbox drops the event for that connection and counts the drop
- a failed send marks the connection dead and stops its writer; the periodic
  sweep then disconnects it
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TYPE_CHECKING

from dm_gateway.components.core.constants import WSConstants

if TYPE_CHECKING:
    from dm_gateway.components.metrics.collector import MetricsCollector

logger = logging.getLogger(__name__)


@dataclass
class _Outbox:
    connection_id: str
    transport: Any
    queue: asyncio.Queue
    writer: asyncio.Task | None = None
    closed: bool = False
    sent: int = field(default=0)


class ConnectionBroadcaster:
    """
    Per-connection delivery queues.

    Usage:
        broadcaster.attach(connection_id, websocket)
        broadcaster.enqueue(connection_id, {"type": "receiveMessage", "data": {...}})
        await broadcaster.detach(connection_id)
    """

    def __init__(
        self,
        metrics: "MetricsCollector",
        mark_dead_callback: Callable[[str], Awaitable[None]],
        outbox_size: int = 256,
    ) -> None:
        self._metrics = metrics
        self._mark_dead = mark_dead_callback
        self._outbox_size = outbox_size
        self._outboxes: dict[str, _Outbox] = {}

    @property
    def outbox_count(self) -> int:
        return len(self._outboxes)

    def attach(self, connection_id: str, transport: Any) -> None:
        """Create the outbox and start its writer. Must run inside the event loop."""
        if connection_id in self._outboxes:
            return
        outbox = _Outbox(
            connection_id=connection_id,
            transport=transport,
            queue=asyncio.Queue(maxsize=self._outbox_size),
        )
        outbox.writer = asyncio.create_task(
            self._writer_loop(outbox),
            name=f"outbox_writer_{connection_id[:8]}",
        )
        self._outboxes[connection_id] = outbox

    def enqueue(self, connection_id: str, frame: dict[str, Any]) -> bool:
        """
        Queue a frame for one connection without blocking.

        Returns:
            True if queued; False if the connection has no live outbox or the
            outbox is full (the frame is dropped).
        """
        outbox = self._outboxes.get(connection_id)
        if outbox is None or outbox.closed:
            return False
        try:
            outbox.queue.put_nowait(frame)
        except asyncio.QueueFull:
            self._metrics.increment_delivery_dropped()
            logger.warning(
                "Outbox full, dropping event",
                connection_id=connection_id[:8],
                event_type=frame.get("type"),
                outbox_size=self._outbox_size,
            )
            return False
        return True

    async def _writer_loop(self, outbox: _Outbox) -> None:
        """Send queued frames in order until cancelled or the transport fails."""
        queue = outbox.queue
        while True:
            frame = await queue.get()
            try:
                await outbox.transport.send_json(frame)
                outbox.sent += 1
                self._metrics.increment_delivery_sent()
            except asyncio.CancelledError:
                queue.task_done()
                raise
            except Exception as e:
                queue.task_done()
                self._metrics.increment_delivery_failed()
                logger.info(
                    "Delivery failed, marking connection dead",
                    connection_id=outbox.connection_id[:8],
                    error=type(e).__name__,
                )
                await self._close_outbox(outbox)
                return
            queue.task_done()

    async def _close_outbox(self, outbox: _Outbox) -> None:
        """Stop accepting frames, discard what is queued and report the connection."""
        outbox.closed = True
        dropped = 0
        while True:
            try:
                outbox.queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            outbox.queue.task_done()
            dropped += 1
        if dropped:
            self._metrics.increment_delivery_dropped(dropped)
        await self._mark_dead(outbox.connection_id)

    async def flush(self, connection_id: str | None = None, timeout: float | None = None) -> None:
        """
        Wait until queued frames have been written.

        Flushes one connection, or every connection when connection_id is None.
        """
        if connection_id is not None:
            outbox = self._outboxes.get(connection_id)
            outboxes = [outbox] if outbox is not None else []
        else:
            outboxes = list(self._outboxes.values())

        joins = [o.queue.join() for o in outboxes if not o.closed]
        if not joins:
            return
        if timeout is None:
            await asyncio.gather(*joins)
            return
        try:
            await asyncio.wait_for(asyncio.gather(*joins), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Outbox flush timed out", outboxes=len(joins), timeout=timeout)

    async def detach(self, connection_id: str) -> None:
        """Stop the writer and drop the outbox. Idempotent."""
        outbox = self._outboxes.pop(connection_id, None)
        if outbox is None:
            return
        outbox.closed = True
        writer = outbox.writer
        if writer is not None and writer is not asyncio.current_task() and not writer.done():
            writer.cancel()
            with suppress(asyncio.CancelledError):
                await writer

    async def stop(self, timeout: float = WSConstants.OUTBOX_DRAIN_TIMEOUT) -> None:
        """Flush every outbox (bounded by timeout), then stop all writers."""
        await self.flush(timeout=timeout)
        for connection_id in list(self._outboxes):
            await self.detach(connection_id)
        logger.info("Connection broadcaster stopped")

    def get_stats(self) -> dict[str, int]:
        return {
            "outboxes": len(self._outboxes),
            "queued_frames": sum(o.queue.qsize() for o in self._outboxes.values()),
        }
