"""
Redis connection behind the per-booking mutex.

One lazily created asyncio client per process. Celery reads the same
``redis_url`` for its broker but opens its own connections.
"""

from typing import Optional
import logging

from redis import asyncio as aioredis
from redis.asyncio.client import Redis
from redis.exceptions import RedisError

from app.config import settings

logger = logging.getLogger(__name__)


class RedisClient:
    """Process-wide client used by ``booking_lock``."""

    _client: Optional[Redis] = None

    @classmethod
    def get_client(cls) -> Redis:
        if cls._client is None:
            # Short timeouts: a slow Redis must not hold up a charge
            cls._client = aioredis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_connect_timeout=settings.redis_timeout_seconds,
                socket_timeout=settings.redis_timeout_seconds,
                health_check_interval=30,
            )
            logger.info("Redis client for booking locks initialized")

        return cls._client

    @classmethod
    async def is_available(cls) -> bool:
        """Ping Redis; False means booking locks are currently being skipped."""
        try:
            return bool(await cls.get_client().ping())
        except RedisError as e:
            logger.warning(f"Redis ping failed, booking locks disabled: {e}")
            return False

    @classmethod
    async def close(cls):
        if cls._client:
            await cls._client.aclose()
            cls._client = None
            logger.info("Redis client closed")


async def get_redis() -> Redis:
    """Client for the booking mutex."""
    return RedisClient.get_client()
