"""Redis-based caching for graph query responses.

Cache keys are constructed as: {prefix}:{scope}
A missing Redis client turns every operation into a no-op.
"""

import json
from typing import Any, Optional

from db.redis import get_redis
from utils.logging import get_logger
from utils.metrics import CACHE_HITS, CACHE_MISSES

logger = get_logger(__name__)

CACHE_PREFIXES = {
    "pooled_graph": "cache:graph:pooled",
    "session_graph": "cache:graph:session",
}

DEFAULT_TTLS = {
    "pooled_graph": 10,  # changes on every step pool flush
    "session_graph": 10,
}


def _build_cache_key(prefix: str, scope: str) -> str:
    full_prefix = CACHE_PREFIXES.get(prefix, f"cache:{prefix}")
    return f"{full_prefix}:{scope}"


async def get_cached(prefix: str, scope: str = "all") -> Optional[Any]:
    """Get a cached value.

    Returns:
        Cached value or None if not found or caching is disabled
    """
    redis_client = get_redis()
    if redis_client is None:
        return None

    cache_key = _build_cache_key(prefix, scope)

    try:
        cached = await redis_client.get(cache_key)
        if cached:
            CACHE_HITS.labels(cache_type=prefix).inc()
            logger.debug(f"Cache hit: {cache_key}")
            return json.loads(cached)
        CACHE_MISSES.labels(cache_type=prefix).inc()
        logger.debug(f"Cache miss: {cache_key}")
        return None
    except Exception as e:
        logger.warning(f"Cache read error for {cache_key}: {e}")
        return None


async def set_cached(
    prefix: str,
    value: Any,
    scope: str = "all",
    ttl: Optional[int] = None,
) -> bool:
    """Set a cached value (must be JSON serializable).

    Returns:
        True if cached successfully, False otherwise
    """
    redis_client = get_redis()
    if redis_client is None:
        return False

    cache_key = _build_cache_key(prefix, scope)

    if ttl is None:
        ttl = DEFAULT_TTLS.get(prefix, 10)

    try:
        await redis_client.setex(cache_key, ttl, json.dumps(value, default=str))
        logger.debug(f"Cache set: {cache_key} (TTL: {ttl}s)")
        return True
    except Exception as e:
        logger.warning(f"Cache write error for {cache_key}: {e}")
        return False


async def invalidate_cache(prefix: str) -> int:
    """Invalidate all cache entries under a prefix.

    Returns:
        Number of keys deleted
    """
    redis_client = get_redis()
    if redis_client is None:
        return 0

    full_prefix = CACHE_PREFIXES.get(prefix, f"cache:{prefix}")
    pattern = f"{full_prefix}:*"

    try:
        # SCAN rather than KEYS to avoid blocking Redis
        deleted = 0
        cursor = 0
        while True:
            cursor, keys = await redis_client.scan(cursor, match=pattern, count=100)
            if keys:
                deleted += await redis_client.delete(*keys)
            if cursor == 0:
                break

        if deleted > 0:
            logger.info(f"Invalidated {deleted} cache entries for {pattern}")
        return deleted
    except Exception as e:
        logger.warning(f"Cache invalidation error for {pattern}: {e}")
        return 0


async def invalidate_graph_caches() -> int:
    """Invalidate every graph response cache."""
    total_deleted = 0
    for prefix in CACHE_PREFIXES:
        total_deleted += await invalidate_cache(prefix)
    return total_deleted
