"""Redis caching service for learner profile payloads."""
import json
import logging
from typing import Optional
import redis
from lesson_core.core.config import settings

logger = logging.getLogger(__name__)

# Redis client (lazy, with graceful degradation)
_redis_client = None
_redis_checked = False


def _client():
    """Connect on first use; None when caching is disabled or Redis is unreachable."""
    global _redis_client, _redis_checked
    if not settings.cache_enabled:
        return None
    if not _redis_checked:
        _redis_checked = True
        try:
            client = redis.from_url(settings.redis_url, decode_responses=True)
            client.ping()  # Test connection
            _redis_client = client
            logger.info("Redis cache connected")
        except redis.RedisError as e:
            logger.warning(f"Redis not available: {e}. Continuing without cache.")
            _redis_client = None
    return _redis_client


def redis_available() -> bool:
    return _client() is not None


def get(key: str) -> Optional[str]:
    """
    Get value from cache.

    Args:
        key: Cache key

    Returns:
        Cached value or None
    """
    client = _client()
    if not client:
        return None

    try:
        return client.get(key)
    except redis.RedisError as e:
        logger.error(f"Cache get error: {e}")
        return None


def set(key: str, value: str, ttl: int) -> None:
    """
    Set value in cache with TTL.

    Args:
        key: Cache key
        value: Value to cache
        ttl: Time to live in seconds
    """
    client = _client()
    if not client:
        return

    try:
        client.setex(key, ttl, value)
    except redis.RedisError as e:
        logger.error(f"Cache set error: {e}")


def delete(key: str) -> None:
    client = _client()
    if not client:
        return

    try:
        client.delete(key)
    except redis.RedisError as e:
        logger.error(f"Cache delete error: {e}")


def get_json(key: str) -> Optional[dict]:
    """Get JSON value from cache."""
    value = get(key)
    if value:
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return None
    return None


def set_json(key: str, value: dict, ttl: int) -> None:
    """Set JSON value in cache."""
    set(key, json.dumps(value), ttl)
