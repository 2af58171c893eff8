"""
Redis connection for the overdue scan lease.

Only needed when several application instances run the scheduler; a
single instance relies on its local single-flight guard.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError
from backend.app.core.config import settings

logger = logging.getLogger(__name__)

redis_client = redis.from_url(
    settings.redis_url,
    decode_responses=settings.redis_decode_responses,
)


def lease_client() -> Optional[redis.Redis]:
    """Client used for the scan lease, or None when leasing is disabled."""
    if not settings.scan_lease_enabled:
        return None
    return redis_client


async def ping_redis() -> bool:
    try:
        return bool(await redis_client.ping())
    except RedisError as exc:
        logger.warning("Redis ping failed: %s", exc)
        return False
