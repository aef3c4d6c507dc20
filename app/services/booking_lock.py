"""
Per-booking mutex in Redis.

Serializes payment attempts against one booking across workers. When Redis is
unreachable the lock is skipped; the version check on the bookings/payments rows
still rejects the losing writer.
"""

import logging
import secrets
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from redis.exceptions import RedisError

from app.config import settings
from app.exceptions import ConflictError

logger = logging.getLogger(__name__)

# Delete only if we still own the key
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def lock_key(booking_id: object) -> str:
    return f"{settings.app_name}:booking:{booking_id}:mutex"


@asynccontextmanager
async def booking_lock(booking_id: object, ttl_s: Optional[int] = None) -> AsyncIterator[bool]:
    """
    Hold the booking mutex for the duration of the block.

    Yields True when the lock is held, False when Redis was unavailable.
    Raises ConflictError when another request holds it.
    """
    from app.redis import get_redis

    key = lock_key(booking_id)
    token = secrets.token_hex(8)
    ttl = ttl_s or settings.booking_lock_ttl_seconds

    acquired = False
    redis = None
    try:
        redis = await get_redis()
        acquired = bool(await redis.set(key, token, nx=True, ex=ttl))
    except RedisError as e:
        logger.warning(f"Booking lock unavailable for {booking_id}, continuing without it: {e}")
        redis = None

    if redis is not None and not acquired:
        logger.info(f"Booking {booking_id} is locked by another request")
        raise ConflictError(
            "Another operation on this booking is in progress",
            details={"booking_id": str(booking_id)},
        )

    try:
        yield acquired
    finally:
        if acquired:
            try:
                await redis.eval(_RELEASE_SCRIPT, 1, key, token)
            except RedisError as e:
                logger.warning(f"Failed to release booking lock {key}: {e}")
