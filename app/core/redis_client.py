"""
Redis Client - async client per event loop.

Uses REDIS_URL from the configuration (default: redis://localhost:6379/0).
The API runs on one loop for its whole life; each Celery task runs on a fresh
loop, so clients are keyed by the running loop and closed with it.
"""
import asyncio
import weakref
from urllib.parse import urlparse

import redis.asyncio as aioredis

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_clients: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, aioredis.Redis]" = (
    weakref.WeakKeyDictionary()
)


def _mask_redis_url(url: str) -> str:
    """Hide the password in REDIS_URL for logs (redis://:****@host:6379)."""
    try:
        parsed = urlparse(url)
        if parsed.password:
            return url.replace(f":{parsed.password}@", ":****@")
        return url
    except ValueError:
        return "redis://****"


async def get_redis() -> aioredis.Redis:
    """Return the Redis client (connection pool) for the running event loop."""
    loop = asyncio.get_running_loop()
    client = _clients.get(loop)
    if client is not None:
        return client

    # No await between lookup and store: one client per loop
    client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    _clients[loop] = client
    logger.info("Redis client initialized", extra_data={
        "url": _mask_redis_url(settings.REDIS_URL),
    })
    return client


async def close_redis() -> None:
    """Close the running loop's client - app shutdown and end of every Celery task."""
    client = _clients.pop(asyncio.get_running_loop(), None)
    if client is not None:
        await client.aclose()
        logger.debug("Redis connection closed")
