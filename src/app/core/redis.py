"""Redis client backing the shared sync progress store.

Only used when SYNC_PROGRESS_BACKEND=redis. The client is created lazily,
decodes responses to str (progress snapshots are JSON text) and is closed
in the application lifespan.
"""

from __future__ import annotations

import redis.asyncio as aioredis

from src.app.config import get_settings

_redis_pool: aioredis.Redis | None = None


def get_redis_pool() -> aioredis.Redis:
    """Get or create the shared Redis client."""
    global _redis_pool
    if _redis_pool is None:
        settings = get_settings()
        _redis_pool = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
            socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
        )
    return _redis_pool


async def check_redis() -> str | None:
    """PING Redis. Returns None when healthy, else the error text."""
    try:
        if not await get_redis_pool().ping():
            return "PING did not return PONG"
    except Exception as exc:
        return str(exc) or type(exc).__name__
    return None


async def close_redis() -> None:
    global _redis_pool
    if _redis_pool is not None:
        await _redis_pool.aclose()
        _redis_pool = None
