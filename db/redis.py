"""Optional Redis client backing the graph response cache.

Without REDIS_URL the client stays None and utils.cache skips every call.
"""

import asyncio
import random

import redis.asyncio as redis
from redis.exceptions import BusyLoadingError
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from config import get_settings
from utils.logging import get_logger

logger = get_logger(__name__)

redis_client = None

CONNECT_ATTEMPTS = 4
TRANSIENT_ERRORS = (
    RedisConnectionError,
    RedisTimeoutError,
    BusyLoadingError,
    ConnectionError,
    TimeoutError,
    OSError,
)


async def _ping_until_ready(client) -> None:
    """PING with short exponential backoff; raises the last error."""
    for attempt in range(CONNECT_ATTEMPTS):
        try:
            await client.ping()
            return
        except TRANSIENT_ERRORS as e:
            if attempt == CONNECT_ATTEMPTS - 1:
                raise
            delay = min(0.5 * (2**attempt), 4.0) + random.uniform(0, 0.5)
            logger.warning(
                f"Redis ping attempt {attempt + 1}/{CONNECT_ATTEMPTS} failed: "
                f"{type(e).__name__}: {e}. Retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)


async def init_redis():
    global redis_client
    settings = get_settings()

    if not settings.redis_url:
        logger.info("REDIS_URL not set, graph response caching disabled")
        return

    redis_client = redis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=10,
        socket_timeout=5.0,
        socket_connect_timeout=5.0,
    )
    await _ping_until_ready(redis_client)
    logger.info(f"Redis cache connected ({settings._mask_url(settings.redis_url)})")


async def close_redis():
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None
        logger.info("Redis connection pool closed")


def get_redis():
    """The Redis client, or None when caching is disabled."""
    return redis_client
