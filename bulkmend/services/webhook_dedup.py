import logging
from typing import Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from bulkmend.settings import settings

logger = logging.getLogger(__name__)

WEBHOOK_ID_PREFIX = "webhook:processed:"

class WebhookDedup:
    """
    Remembers which job a trigger delivery produced, keyed by the delivery id,
    so replays of the same delivery are answered without touching the
    database. Store errors fail open; fingerprint dedup still applies.
    """

    def __init__(self, redis: Redis, ttl_seconds: Optional[int] = None):
        self.redis = redis
        self.ttl_seconds = ttl_seconds or settings.WEBHOOK_DEDUP_TTL_SECONDS

    async def lookup(self, webhook_id: Optional[str]) -> Optional[str]:
        if not webhook_id:
            return None
        try:
            job_id = await self.redis.get(f"{WEBHOOK_ID_PREFIX}{webhook_id}")
        except RedisError as e:
            logger.error("Failed to check webhook dedup for %s: %s", webhook_id, e)
            return None

        if job_id:
            logger.info("Duplicate webhook delivery %s -> job %s", webhook_id, job_id)
        return job_id

    async def remember(self, webhook_id: Optional[str], job_id: str) -> None:
        if not webhook_id:
            return
        try:
            await self.redis.set(f"{WEBHOOK_ID_PREFIX}{webhook_id}", job_id, ex=self.ttl_seconds)
        except RedisError as e:
            # Job already exists; a replay falls back to fingerprint dedup.
            logger.error("Failed to mark webhook %s as processed: %s", webhook_id, e)
