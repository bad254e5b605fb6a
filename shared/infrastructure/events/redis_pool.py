"""
Redis Connection Pool Management.

One lazily created async client per process, shared by the event publisher
and the gateway subscriber.
"""

from __future__ import annotations

import asyncio
import threading

import redis.asyncio as redis

from shared.config.settings import settings
from shared.config.logging import get_logger

logger = get_logger(__name__)

_redis_pool: redis.Redis | None = None
_redis_pool_lock: asyncio.Lock | None = None
_pool_lock_init = threading.Lock()


def _get_pool_lock() -> asyncio.Lock:
    """
    Get or create the pool lock (lazy initialization for event loop safety).

    Uses threading.Lock with double-check pattern so concurrent first callers
    never create two different asyncio.Lock instances.
    """
    global _redis_pool_lock
    if _redis_pool_lock is None:
        with _pool_lock_init:
            if _redis_pool_lock is None:
                _redis_pool_lock = asyncio.Lock()
    return _redis_pool_lock


async def get_redis_pool() -> redis.Redis:
    """Get or create the Redis connection pool singleton."""
    global _redis_pool

    if _redis_pool is not None:
        return _redis_pool

    async with _get_pool_lock():
        # Another coroutine may have initialized it while we waited
        if _redis_pool is None:
            _redis_pool = redis.from_url(
                settings.redis_url,
                max_connections=settings.redis_pool_max_connections,
                decode_responses=True,
                socket_connect_timeout=settings.redis_socket_timeout,
                socket_timeout=settings.redis_socket_timeout,
                health_check_interval=30,
            )
            logger.info(
                "Redis async pool initialized",
                max_connections=settings.redis_pool_max_connections,
                timeout=settings.redis_socket_timeout,
            )
    return _redis_pool


async def close_redis_pool() -> None:
    """Close the Redis pool. Call during application shutdown."""
    global _redis_pool
    if _redis_pool is None:
        return
    try:
        await _redis_pool.aclose()
    except Exception as e:
        logger.warning("Error closing Redis pool", error=str(e))
    finally:
        _redis_pool = None
