"""Tests for the per-tenant Redis lock."""

import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from bulkmend.services.tenant_lock import LockExtender, TenantLockManager

TENANT = "acme.myshopify.com"


class BrokenRedis:
    """Every command fails as if the server were unreachable."""

    async def set(self, *args, **kwargs):
        raise RedisConnectionError("Connection refused")

    async def get(self, *args, **kwargs):
        raise RedisConnectionError("Connection refused")

    async def eval(self, *args, **kwargs):
        raise RedisConnectionError("Connection refused")


@pytest.fixture
def locks(redis):
    return TenantLockManager(redis, ttl_seconds=60)


class TestTenantLockManager:
    async def test_key_layout(self, locks, redis):
        assert await locks.acquire(TENANT, "job-a")
        assert await redis.get(f"lock:bulkop:{TENANT}") == "job-a"

    async def test_mutual_exclusion(self, locks):
        assert await locks.acquire(TENANT, "job-a") is True
        assert await locks.acquire(TENANT, "job-b") is False
        assert await locks.holder(TENANT) == "job-a"

    async def test_other_tenants_are_independent(self, locks):
        assert await locks.acquire(TENANT, "job-a")
        assert await locks.acquire("other.myshopify.com", "job-b")

    async def test_concurrent_acquire_grants_exactly_one(self, locks):
        results = await asyncio.gather(*(locks.acquire(TENANT, f"job-{i}") for i in range(20)))
        assert results.count(True) == 1

    async def test_release_frees_lock(self, locks):
        await locks.acquire(TENANT, "job-a")
        assert await locks.release(TENANT, "job-a") is True
        assert await locks.holder(TENANT) is None
        assert await locks.acquire(TENANT, "job-b") is True

    async def test_release_by_non_holder_is_refused(self, locks):
        await locks.acquire(TENANT, "job-a")
        assert await locks.release(TENANT, "job-b") is False
        assert await locks.holder(TENANT) == "job-a"

    async def test_release_of_free_lock_is_refused(self, locks):
        assert await locks.release(TENANT, "job-a") is False

    async def test_expired_lock_can_be_taken(self, locks):
        assert await locks.acquire(TENANT, "job-a", ttl_seconds=0.05)
        await asyncio.sleep(0.15)
        assert await locks.acquire(TENANT, "job-b") is True

    async def test_stale_holder_cannot_release_new_holders_lock(self, locks):
        await locks.acquire(TENANT, "job-a", ttl_seconds=0.05)
        await asyncio.sleep(0.15)
        await locks.acquire(TENANT, "job-b")

        assert await locks.release(TENANT, "job-a") is False
        assert await locks.holder(TENANT) == "job-b"

    async def test_extend_only_by_holder(self, locks, redis):
        await locks.acquire(TENANT, "job-a", ttl_seconds=1)

        assert await locks.extend(TENANT, "job-b", ttl_seconds=120) is False
        assert await locks.extend(TENANT, "job-a", ttl_seconds=120) is True
        assert await redis.pttl(f"lock:bulkop:{TENANT}") > 60_000


class TestLockStoreFailure:
    async def test_acquire_fails_open(self):
        locks = TenantLockManager(BrokenRedis(), ttl_seconds=60)
        assert await locks.acquire(TENANT, "job-a") is True

    async def test_release_and_extend_report_failure(self):
        locks = TenantLockManager(BrokenRedis(), ttl_seconds=60)
        assert await locks.release(TENANT, "job-a") is False
        assert await locks.extend(TENANT, "job-a") is False
        assert await locks.holder(TENANT) is None


class TestLockExtender:
    async def test_keeps_lock_alive_past_ttl(self, locks):
        await locks.acquire(TENANT, "job-a", ttl_seconds=0.2)

        async with LockExtender(locks, TENANT, "job-a", interval=0.05, ttl_seconds=0.2) as extender:
            await asyncio.sleep(0.5)

        assert extender.extensions >= 3
        assert await locks.holder(TENANT) == "job-a"

    async def test_stop_is_idempotent(self, locks):
        extender = LockExtender(locks, TENANT, "job-a", interval=10)
        extender.start()
        await extender.stop()
        await extender.stop()
