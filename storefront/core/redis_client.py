"""
Redis client

Provides cross-instance webhook idempotency via Redis SETEX. When REDIS_URL
is not configured the process-local ledger below is the only guard.
"""
import logging
from collections import OrderedDict
from typing import Optional

import redis.asyncio as redis

from storefront.core.config import settings

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None

WEBHOOK_KEY_PREFIX = "webhook:event:"
WEBHOOK_TTL_HOURS = 24
FALLBACK_MAX_EVENTS = 10000


async def get_redis() -> Optional[redis.Redis]:
    """Get Redis client, initializing if needed.

    Returns None if REDIS_URL not configured (graceful degradation).
    """
    global _redis_client

    if not settings.REDIS_URL:
        return None

    if _redis_client is None:
        try:
            _redis_client = redis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True
            )
            await _redis_client.ping()
            logger.info("Redis connection established")
        except (redis.RedisError, OSError) as e:
            logger.warning(f"Redis connection failed: {e}. Falling back to in-memory.")
            _redis_client = None

    return _redis_client


async def close_redis():
    """Close Redis connection on shutdown."""
    global _redis_client
    if _redis_client:
        await _redis_client.close()
        _redis_client = None


class WebhookEventLedger:
    """
    Remembers processed webhook event ids.

    Checks Redis first for cross-instance coordination and always records
    locally so a single instance stays idempotent when Redis is down.
    """

    def __init__(self, max_events: int = FALLBACK_MAX_EVENTS):
        self.max_events = max_events
        self._seen: "OrderedDict[str, None]" = OrderedDict()

    async def is_processed(self, event_id: str) -> bool:
        if event_id in self._seen:
            return True

        client = await get_redis()
        if not client:
            return False
        try:
            return await client.exists(f"{WEBHOOK_KEY_PREFIX}{event_id}") > 0
        except redis.RedisError as e:
            logger.warning(f"Redis check failed for webhook {event_id}: {e}")
            return False

    async def mark_processed(self, event_id: str, ttl_hours: int = WEBHOOK_TTL_HOURS) -> bool:
        """Record the event; returns True if Redis also recorded it."""
        self._seen[event_id] = None
        while len(self._seen) > self.max_events:
            self._seen.popitem(last=False)

        client = await get_redis()
        if not client:
            return False
        try:
            await client.setex(f"{WEBHOOK_KEY_PREFIX}{event_id}", ttl_hours * 3600, "1")
            return True
        except redis.RedisError as e:
            logger.warning(f"Redis mark failed for webhook {event_id}: {e}")
            return False


webhook_ledger = WebhookEventLedger()
