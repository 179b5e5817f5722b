"""Tests for queue leasing, settlement and reaping."""

from datetime import timedelta
from uuid import uuid4

import pytest

from bulkmend.commands.admit_job import admit_job
from bulkmend.commands.enqueue import enqueue_job
from bulkmend.commands.heartbeat import heartbeat_entry
from bulkmend.commands.lease_entry import lease_entry
from bulkmend.commands.requeue_expired import requeue_expired_entries
from bulkmend.commands.retry_parked import retry_parked_entry
from bulkmend.commands.settle_entry import settle_entry
from bulkmend.db.models import Job, QueueEntry, as_utc, utcnow
from bulkmend.domain.errors import InvalidJobStateError, LeaseNotFoundError
from bulkmend.domain.models import Done, Failed, LockBusy
from bulkmend.domain.states import JobStatus, QueueStatus
from bulkmend.settings import settings

from conftest import TENANT_ID


@pytest.fixture
async def job_id(session_factory, tenant, spec):
    async with session_factory() as session:
        admission = await admit_job(session, TENANT_ID, spec)
    return admission.job_id


async def lease(session_factory, worker_id="worker-1", lease_seconds=60):
    async with session_factory() as session:
        entry = await lease_entry(session, worker_id, lease_seconds)
        await session.commit()
    return entry


async def settle(session_factory, job_id, outcome, lease_token=None):
    async with session_factory() as session:
        entry = await settle_entry(session, job_id, outcome, lease_token=lease_token)
        await session.commit()
    return entry


async def make_available(session_factory, job_id):
    async with session_factory() as session:
        entry = await session.get(QueueEntry, job_id)
        entry.available_at = utcnow() - timedelta(seconds=1)
        await session.commit()


class TestEnqueue:
    async def test_second_enqueue_is_noop(self, session_factory, job_id):
        async with session_factory() as session:
            created = await enqueue_job(session, job_id, TENANT_ID)
            await session.commit()
        assert created is False


class TestLeaseEntry:
    async def test_claims_waiting_entry(self, session_factory, job_id):
        entry = await lease(session_factory)

        assert entry.job_id == job_id
        assert entry.status == QueueStatus.ACTIVE
        assert entry.worker_id == "worker-1"
        assert entry.lease_token is not None
        assert as_utc(entry.lease_expires_at) > utcnow()

    async def test_active_entry_is_not_leased_twice(self, session_factory, job_id):
        assert await lease(session_factory, "worker-1") is not None
        assert await lease(session_factory, "worker-2") is None

    async def test_future_entries_are_not_eligible(self, session_factory, job_id):
        async with session_factory() as session:
            entry = await session.get(QueueEntry, job_id)
            entry.available_at = utcnow() + timedelta(minutes=5)
            await session.commit()

        assert await lease(session_factory) is None

    async def test_empty_queue(self, session_factory, tenant):
        assert await lease(session_factory) is None


class TestHeartbeat:
    async def test_extends_active_lease(self, session_factory, job_id):
        entry = await lease(session_factory, lease_seconds=10)

        async with session_factory() as session:
            expires_at = await heartbeat_entry(session, job_id, entry.lease_token, extend_seconds=600)
            await session.commit()

        assert expires_at > as_utc(entry.lease_expires_at)

    async def test_wrong_token_raises(self, session_factory, job_id):
        await lease(session_factory)
        async with session_factory() as session:
            with pytest.raises(LeaseNotFoundError):
                await heartbeat_entry(session, job_id, uuid4())


class TestSettleEntry:
    async def test_done(self, session_factory, job_id):
        entry = await lease(session_factory)
        settled = await settle(session_factory, job_id, Done(JobStatus.COMPLETED), entry.lease_token)

        assert settled.status == QueueStatus.DONE
        assert settled.lease_token is None
        assert settled.worker_id is None

    async def test_lock_busy_requeues_without_consuming_attempt(self, session_factory, job_id):
        await lease(session_factory)
        before = utcnow()
        settled = await settle(session_factory, job_id, LockBusy(holder="other-job"))

        assert settled.status == QueueStatus.WAITING
        assert settled.attempts == 0
        assert as_utc(settled.available_at) >= before + timedelta(seconds=settings.LOCK_RETRY_DELAY_SECONDS - 1)

    async def test_retryable_failure_backs_off(self, session_factory, job_id):
        await lease(session_factory)
        before = utcnow()
        settled = await settle(session_factory, job_id, Failed("store unavailable", retryable=True))

        assert settled.status == QueueStatus.WAITING
        assert settled.attempts == 1
        assert settled.last_error == "store unavailable"
        delay = (as_utc(settled.available_at) - before).total_seconds()
        assert settings.QUEUE_BACKOFF_BASE_SECONDS - 1 <= delay <= settings.QUEUE_BACKOFF_BASE_SECONDS * 1.1 + 1

    async def test_retryable_failure_parks_at_attempt_limit(self, session_factory, job_id):
        for attempt in range(1, settings.QUEUE_MAX_ATTEMPTS + 1):
            await make_available(session_factory, job_id)
            assert await lease(session_factory) is not None
            settled = await settle(session_factory, job_id, Failed("boom", retryable=True))
            assert settled.attempts == attempt

        assert settled.status == QueueStatus.PARKED
        assert await lease(session_factory) is None

    async def test_non_retryable_failure_parks_immediately(self, session_factory, job_id):
        await lease(session_factory)
        settled = await settle(session_factory, job_id, Failed("Job failed", retryable=False))

        assert settled.status == QueueStatus.PARKED
        assert settled.attempts == 1

    async def test_stale_lease_token_is_ignored(self, session_factory, job_id):
        await lease(session_factory)
        assert await settle(session_factory, job_id, Done(JobStatus.COMPLETED), lease_token=uuid4()) is None

        async with session_factory() as session:
            assert (await session.get(QueueEntry, job_id)).status == QueueStatus.ACTIVE


class TestRequeueExpired:
    async def test_expired_lease_returns_to_waiting(self, session_factory, job_id):
        await lease(session_factory, lease_seconds=-1)

        async with session_factory() as session:
            reaped = await requeue_expired_entries(session)
            await session.commit()

        assert reaped == 1
        async with session_factory() as session:
            entry = await session.get(QueueEntry, job_id)
        assert entry.status == QueueStatus.WAITING
        assert entry.attempts == 1
        assert entry.lease_token is None

    async def test_live_lease_is_left_alone(self, session_factory, job_id):
        await lease(session_factory, lease_seconds=600)

        async with session_factory() as session:
            assert await requeue_expired_entries(session) == 0

    async def test_parks_at_attempt_limit(self, session_factory, job_id):
        async with session_factory() as session:
            entry = await session.get(QueueEntry, job_id)
            entry.attempts = entry.max_attempts - 1
            await session.commit()
        await lease(session_factory, lease_seconds=-1)

        async with session_factory() as session:
            await requeue_expired_entries(session)
            await session.commit()
            entry = await session.get(QueueEntry, job_id)

        assert entry.status == QueueStatus.PARKED


class TestRetryParked:
    async def test_open_job_is_requeued_with_fresh_budget(self, session_factory, job_id):
        await lease(session_factory)
        await settle(session_factory, job_id, Failed("boom", retryable=False))

        async with session_factory() as session:
            entry = await retry_parked_entry(session, job_id)
            await session.commit()

        assert entry.status == QueueStatus.WAITING
        assert entry.attempts == 0
        assert await lease(session_factory) is not None

    async def test_terminal_job_is_refused(self, session_factory, job_id):
        await lease(session_factory)
        await settle(session_factory, job_id, Failed("boom", retryable=False))
        async with session_factory() as session:
            job = await session.get(Job, job_id)
            job.status = JobStatus.FAILED
            await session.commit()

        async with session_factory() as session:
            with pytest.raises(InvalidJobStateError):
                await retry_parked_entry(session, job_id)
