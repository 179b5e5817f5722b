"""Tests for the periodic reaper and gauge refresh."""

from datetime import timedelta

import pytest
from prometheus_client import REGISTRY

from bulkmend.commands.admit_job import admit_job
from bulkmend.commands.lease_entry import lease_entry
from bulkmend.db.models import QueueEntry, utcnow
from bulkmend.domain.states import QueueStatus
from bulkmend.scheduler.service import SchedulerService
from bulkmend.utils.locking import try_advisory_xact_lock

from conftest import TENANT_ID


@pytest.fixture
async def job_id(session_factory, tenant, spec):
    async with session_factory() as session:
        admission = await admit_job(session, TENANT_ID, spec)
    return admission.job_id


class TestSchedulerTick:
    async def test_reaps_expired_lease(self, session_factory, job_id):
        async with session_factory() as session:
            await lease_entry(session, "crashed-worker", 60)
            await session.commit()
        async with session_factory() as session:
            entry = await session.get(QueueEntry, job_id)
            entry.lease_expires_at = utcnow() - timedelta(seconds=1)
            await session.commit()

        scheduler = SchedulerService(interval=60, session_factory=session_factory)
        assert await scheduler.tick() is True

        async with session_factory() as session:
            entry = await session.get(QueueEntry, job_id)
        assert entry.status == QueueStatus.WAITING
        assert entry.attempts == 1
        assert entry.worker_id is None
        assert REGISTRY.get_sample_value("bulkmend_reaper_leader_status") == 1
        assert REGISTRY.get_sample_value("bulkmend_queue_depth") == 1

    async def test_live_lease_is_left_alone(self, session_factory, job_id):
        async with session_factory() as session:
            await lease_entry(session, "busy-worker", 60)
            await session.commit()

        await SchedulerService(session_factory=session_factory).tick()

        async with session_factory() as session:
            entry = await session.get(QueueEntry, job_id)
        assert entry.status == QueueStatus.ACTIVE
        assert entry.worker_id == "busy-worker"
        assert REGISTRY.get_sample_value("bulkmend_queue_depth") == 0

    async def test_stop_clears_leader_status(self, session_factory):
        scheduler = SchedulerService(interval=60, session_factory=session_factory)
        await scheduler.start()
        await scheduler.stop()

        assert REGISTRY.get_sample_value("bulkmend_reaper_leader_status") == 0


class TestAdvisoryLock:
    async def test_non_postgres_is_always_leader(self, session):
        assert await try_advisory_xact_lock(session) is True
