"""
Per-tenant mutual exclusion for bulk operations.

The remote platform allows one bulk operation per tenant at a time, so a job
must hold its tenant's lock from before it starts RUNNING until it finishes.
The lock is a Redis key whose value is the holder's job id; release and extend
only act when the caller still holds it, so a job whose lock expired cannot
release or prolong a lock since taken by another job.

If Redis is unreachable, acquire fails open (the lock is treated as granted)
and the platform's own one-operation-per-tenant rule becomes the backstop.
"""
import asyncio
import logging
from typing import Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from bulkmend.api.v1.metrics import LOCK_CONTENTION, LOCK_STORE_ERRORS
from bulkmend.settings import settings

logger = logging.getLogger(__name__)

LOCK_PREFIX = "lock:bulkop:"

RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("del", KEYS[1])
else
  return 0
end
"""

EXTEND_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("pexpire", KEYS[1], ARGV[2])
else
  return 0
end
"""

def _ttl_ms(ttl_seconds: float) -> int:
    return max(int(ttl_seconds * 1000), 1)

class TenantLockManager:
    def __init__(self, redis: Redis, ttl_seconds: Optional[float] = None, prefix: str = LOCK_PREFIX):
        self.redis = redis
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.LOCK_TTL_SECONDS
        self.prefix = prefix

    def key_for(self, tenant_id: str) -> str:
        return f"{self.prefix}{tenant_id}"

    async def acquire(self, tenant_id: str, holder_id: str, ttl_seconds: Optional[float] = None) -> bool:
        """SET NX PX: grants the lock only if nobody holds it."""
        ttl = ttl_seconds if ttl_seconds is not None else self.ttl_seconds
        key = self.key_for(tenant_id)

        try:
            granted = await self.redis.set(key, holder_id, nx=True, px=_ttl_ms(ttl))
        except RedisError as e:
            LOCK_STORE_ERRORS.labels(operation="acquire").inc()
            logger.error("Lock store unavailable acquiring %s for %s, proceeding without lock: %s", tenant_id, holder_id, e)
            return True

        if granted:
            logger.info("Tenant lock acquired tenant=%s holder=%s ttl=%ss", tenant_id, holder_id, ttl)
            return True

        LOCK_CONTENTION.inc()
        logger.info("Tenant lock already held tenant=%s requested_by=%s", tenant_id, holder_id)
        return False

    async def release(self, tenant_id: str, holder_id: str) -> bool:
        """Deletes the lock only if `holder_id` still holds it."""
        try:
            released = await self.redis.eval(RELEASE_SCRIPT, 1, self.key_for(tenant_id), holder_id)
        except RedisError as e:
            LOCK_STORE_ERRORS.labels(operation="release").inc()
            logger.error("Failed to release tenant lock tenant=%s holder=%s: %s", tenant_id, holder_id, e)
            return False

        if int(released) == 1:
            logger.info("Tenant lock released tenant=%s holder=%s", tenant_id, holder_id)
            return True

        logger.warning("Tenant lock not held by %s (already released or expired) tenant=%s", holder_id, tenant_id)
        return False

    async def extend(self, tenant_id: str, holder_id: str, ttl_seconds: Optional[float] = None) -> bool:
        """Resets the TTL only if `holder_id` still holds the lock."""
        ttl = ttl_seconds if ttl_seconds is not None else self.ttl_seconds
        try:
            extended = await self.redis.eval(EXTEND_SCRIPT, 1, self.key_for(tenant_id), holder_id, str(_ttl_ms(ttl)))
        except RedisError as e:
            LOCK_STORE_ERRORS.labels(operation="extend").inc()
            logger.error("Failed to extend tenant lock tenant=%s holder=%s: %s", tenant_id, holder_id, e)
            return False

        if int(extended) == 1:
            logger.debug("Tenant lock extended tenant=%s holder=%s ttl=%ss", tenant_id, holder_id, ttl)
            return True

        logger.warning("Cannot extend tenant lock tenant=%s: not held by %s", tenant_id, holder_id)
        return False

    async def holder(self, tenant_id: str) -> Optional[str]:
        try:
            return await self.redis.get(self.key_for(tenant_id))
        except RedisError as e:
            logger.error("Failed to read tenant lock tenant=%s: %s", tenant_id, e)
            return None

class LockExtender:
    """Background task that keeps a held tenant lock alive during a long job."""

    def __init__(
        self,
        manager: TenantLockManager,
        tenant_id: str,
        holder_id: str,
        interval: Optional[float] = None,
        ttl_seconds: Optional[float] = None,
    ):
        self.manager = manager
        self.tenant_id = tenant_id
        self.holder_id = holder_id
        self.interval = interval if interval is not None else settings.LOCK_EXTEND_INTERVAL_SECONDS
        self.ttl_seconds = ttl_seconds
        self.extensions = 0
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def __aenter__(self) -> "LockExtender":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if await self.manager.extend(self.tenant_id, self.holder_id, self.ttl_seconds):
                self.extensions += 1
            else:
                # Keep trying: a transient store error should not end the refresh loop.
                logger.warning("Lock refresh failed tenant=%s holder=%s", self.tenant_id, self.holder_id)
