"""
Event Publishing with Retry and Validation.

Used by the REST write path after a persisted mutation. Publishing is a
best-effort notification: callers log a failure and carry on, the write has
already succeeded.
"""

from __future__ import annotations

import asyncio
import random

import redis.asyncio as redis

from shared.config.settings import settings
from shared.config.logging import get_logger
from .event_types import MAX_EVENT_SIZE
from .event_schema import Event

logger = get_logger(__name__)


def calculate_retry_delay_with_jitter(attempt: int, base_delay: float) -> float:
    """
    Exponential backoff with ±25% jitter.

    Args:
        attempt: Zero-based attempt number.
        base_delay: Delay for the first retry in seconds.
    """
    delay = base_delay * (2 ** attempt)
    jitter = delay * 0.25
    return max(0.0, delay + random.uniform(-jitter, jitter))


def _validate_event_size(event_json: str, kind: str) -> None:
    """Raise ValueError if the serialized event exceeds MAX_EVENT_SIZE."""
    size = len(event_json.encode("utf-8"))
    if size > MAX_EVENT_SIZE:
        raise ValueError(
            f"Event {kind} exceeds max size: {size} > {MAX_EVENT_SIZE} bytes"
        )


async def publish_event(
    redis_client: redis.Redis,
    event: Event,
    channel: str | None = None,
) -> int:
    """
    Publish an event to the gateway's Redis channel.

    Args:
        redis_client: Async Redis client.
        event: Event to publish.
        channel: Redis channel name (defaults to settings.redis_events_channel).

    Returns:
        Number of subscribers that received the message.

    Raises:
        ValueError: If event is too large.
        Exception: The last Redis error if all retries fail.
    """
    channel = channel or settings.redis_events_channel
    event_json = event.to_json()
    _validate_event_size(event_json, event.kind)

    last_error: Exception | None = None
    for attempt in range(settings.redis_publish_max_retries):
        try:
            return await redis_client.publish(channel, event_json)
        except Exception as e:
            last_error = e
            if attempt < settings.redis_publish_max_retries - 1:
                delay = calculate_retry_delay_with_jitter(
                    attempt, settings.redis_publish_retry_delay
                )
                logger.warning(
                    "Redis publish failed, retrying",
                    channel=channel,
                    kind=event.kind,
                    attempt=attempt + 1,
                    max_retries=settings.redis_publish_max_retries,
                    delay_seconds=round(delay, 2),
                    error=str(e),
                )
                await asyncio.sleep(delay)
            else:
                logger.error(
                    "Redis publish failed after all retries",
                    channel=channel,
                    kind=event.kind,
                    error=str(e),
                )

    raise last_error  # type: ignore[misc]
