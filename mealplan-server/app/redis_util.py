from __future__ import annotations

import logging

import redis
from .config import get_settings

logger = logging.getLogger(__name__)


def get_redis() -> redis.Redis | None:
    url = get_settings().redis_url
    if not url:
        return None
    return redis.from_url(url, decode_responses=True)


def claim_once(key: str, ttl_seconds: int) -> bool:
    """Return True the first time `key` is claimed within `ttl_seconds`.

    Without Redis every claim succeeds; callers must tolerate duplicates then.
    """
    client = get_redis()
    if client is None:
        return True
    try:
        return bool(client.set(key, "1", nx=True, ex=ttl_seconds))
    except redis.RedisError as exc:
        logger.warning("Redis claim failed for %s: %s", key, exc)
        return True


def ping_redis() -> bool | None:
    """None when Redis is not configured, otherwise whether PING answers."""
    client = get_redis()
    if client is None:
        return None
    try:
        return bool(client.ping())
    except redis.RedisError as exc:
        logger.warning("Redis ping failed: %s", exc)
        return False
