"""ATA CRM — Redis client for acknowledgements and pub/sub."""
from typing import Optional

import redis.asyncio as redis

from crm.config import get_settings

_settings = get_settings()
_redis: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    """Get Redis connection (application DB 1)."""
    global _redis
    if _redis is None:
        _redis = redis.from_url(_settings.REDIS_URL, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


def ack_set_key(user_id: int | str) -> str:
    """Acknowledged action keys for one user: ack:{user_id}"""
    return f"ack:{user_id}"
