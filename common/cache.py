# common/cache.py
import json
import logging
import os
from typing import Any, Optional

import redis

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> Optional[redis.Redis]:
    """
    Return a Redis client if REDIS_URL is configured, otherwise None.
    Fails gracefully (no caching) if Redis is not reachable.
    """
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    redis_url = os.getenv("REDIS_URL")
    if not redis_url:
        return None

    try:
        client = redis.from_url(redis_url, decode_responses=True)
        # Lightweight health check
        client.ping()
    except redis.exceptions.RedisError:
        logger.warning("Redis at %s is not reachable, caching disabled", redis_url)
        _redis_client = None
        return None

    _redis_client = client
    return _redis_client


def get_cached_json(key: str) -> Optional[Any]:
    client = get_redis_client()
    if client is None:
        return None

    raw = client.get(key)
    if raw is None:
        return None
    return json.loads(raw)


def set_cached_json(key: str, value: Any, ttl_seconds: int = 60) -> None:
    client = get_redis_client()
    if client is None:
        return

    client.setex(key, ttl_seconds, json.dumps(value, default=str))


def delete_prefix(prefix: str) -> None:
    """
    Delete all keys starting with prefix.
    Example: prefix='resource:42' or 'resources:'.
    """
    client = get_redis_client()
    if client is None:
        return

    pattern = prefix + "*"
    for k in client.scan_iter(pattern):
        client.delete(k)


def schedule_key_prefix(resource_id: int) -> str:
    return f"bookings:schedule:{resource_id}:"


def schedule_version_key(resource_id: int) -> str:
    return f"{schedule_key_prefix(resource_id)}version"


def get_schedule_version(resource_id: int) -> int:
    """
    Current cache generation of a resource's schedule, 0 when never bumped
    or when caching is disabled.

    Read it before computing a schedule and build the cache key from it, so
    a result computed before a concurrent write lands under a stale
    generation that is never read again.
    """
    client = get_redis_client()
    if client is None:
        return 0

    raw = client.get(schedule_version_key(resource_id))
    return int(raw) if raw else 0


def bump_schedule_version(resource_id: int) -> None:
    """Invalidate every cached window of a resource after a booking write."""
    client = get_redis_client()
    if client is None:
        return

    client.incr(schedule_version_key(resource_id))


def schedule_key(resource_id: int, version: int, window_start, window_end) -> str:
    """Cache key of one free/busy window of a resource at a cache generation."""
    return (
        f"{schedule_key_prefix(resource_id)}v{version}:"
        f"{window_start.isoformat()}:{window_end.isoformat()}"
    )
