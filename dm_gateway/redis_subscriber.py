"""
Redis pub/sub bridge from the write path to the event router.

REST handlers publish events (shared.infrastructure.events.publish_event) on
settings.redis_events_channel after committing a mutation; this subscriber
validates each one and hands it to ConnectionManager.publish_event().

Delivery is at-most-once: events published while the subscriber is
reconnecting are lost, as are events for users that are not connected.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, TYPE_CHECKING

import redis.exceptions

from shared.config.settings import settings
from shared.infrastructure.events import MAX_EVENT_SIZE, get_redis_pool
from dm_gateway.components.events.types import DomainEvent
from dm_gateway.components.resilience.retry import RetryConfig, calculate_delay_with_jitter

if TYPE_CHECKING:
    from dm_gateway.connection_manager import ConnectionManager

logger = logging.getLogger(__name__)

PUBSUB_CLEANUP_TIMEOUT = 5.0


def handle_message(manager: "ConnectionManager", raw: str | bytes) -> int:
    """
    Validate one bridged event and publish it.

    Invalid events are logged, counted and dropped.

    Returns:
        Number of connections the event was queued for.
    """
    manager.metrics.increment_bridge_received()

    if len(raw) > MAX_EVENT_SIZE:
        manager.metrics.increment_bridge_invalid()
        logger.warning("Bridged event too large, dropping", size=len(raw), max_size=MAX_EVENT_SIZE)
        return 0

    try:
        event = DomainEvent.from_dict(json.loads(raw))
    except (json.JSONDecodeError, UnicodeDecodeError, ValueError) as e:
        manager.metrics.increment_bridge_invalid()
        logger.warning("Invalid bridged event, dropping", error=str(e))
        return 0

    return manager.publish_event(event)


async def run_subscriber(
    manager: "ConnectionManager",
    channel: str | None = None,
    retry_config: RetryConfig | None = None,
) -> None:
    """
    Subscribe to the events channel and forward events until cancelled.

    Reconnects with exponential backoff and jitter. A failed resubscribe
    counts as another reconnection attempt; the subscriber never reads from
    a pubsub it has already closed.

    Raises:
        RuntimeError: If consecutive reconnection attempts exceed the limit.
    """
    channel = channel or settings.redis_events_channel
    if retry_config is None:
        retry_config = RetryConfig(
            max_delay=settings.redis_max_reconnect_delay,
            max_attempts=settings.redis_max_reconnect_attempts,
        )

    pubsub = None
    reconnect_attempts = 0

    try:
        while True:
            if pubsub is None:
                try:
                    pubsub = await _subscribe(channel)
                except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as e:
                    reconnect_attempts = await _backoff(e, reconnect_attempts, retry_config)
                    continue

            try:
                msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if msg is None:
                    continue
                if msg.get("type") != "message":
                    continue

                reconnect_attempts = 0
                handle_message(manager, msg["data"])

            except redis.exceptions.TimeoutError:
                continue

            except redis.exceptions.ConnectionError as e:
                await _close_pubsub(pubsub, channel)
                pubsub = None
                reconnect_attempts = await _backoff(e, reconnect_attempts, retry_config)

    except asyncio.CancelledError:
        logger.info("Redis subscriber cancelled")
        raise
    finally:
        if pubsub is not None:
            await _close_pubsub(pubsub, channel)


async def _backoff(error: Exception, attempts: int, retry_config: RetryConfig) -> int:
    """Sleep before the next reconnection attempt and return the new attempt count."""
    attempts += 1
    if attempts > retry_config.max_attempts:
        logger.error(
            "Max reconnection attempts exceeded, subscriber giving up",
            attempts=attempts,
        )
        raise RuntimeError(
            f"Redis subscriber failed after {attempts} reconnection attempts"
        ) from error

    delay = calculate_delay_with_jitter(attempts - 1, retry_config)
    logger.warning(
        "Redis connection error, reconnecting",
        error=str(error),
        attempt=attempts,
        delay_with_jitter=round(delay, 2),
    )
    await asyncio.sleep(delay)
    return attempts


async def _subscribe(channel: str) -> Any:
    redis_pool = await get_redis_pool()
    pubsub = redis_pool.pubsub()
    try:
        await pubsub.subscribe(channel)
    except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError):
        await _close_pubsub(pubsub, channel)
        raise
    logger.info("Redis subscriber started", channel=channel)
    return pubsub


async def _close_pubsub(pubsub: Any, channel: str) -> None:
    """Unsubscribe and close, tolerating a connection that is already gone."""
    try:
        await asyncio.wait_for(pubsub.unsubscribe(channel), timeout=PUBSUB_CLEANUP_TIMEOUT)
    except (asyncio.TimeoutError, redis.exceptions.RedisError, OSError) as e:
        logger.debug("Error during pubsub unsubscribe", error=str(e))
    try:
        await asyncio.wait_for(pubsub.aclose(), timeout=PUBSUB_CLEANUP_TIMEOUT)
    except (asyncio.TimeoutError, redis.exceptions.RedisError, OSError) as e:
        logger.debug("Error closing pubsub", error=str(e))
