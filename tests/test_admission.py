"""Tests for deduplicated job admission."""

import asyncio
from dataclasses import replace

from sqlalchemy import func, select

from bulkmend.commands.admit_job import admit_job
from bulkmend.db.models import Job, JobEventLog, QueueEntry
from bulkmend.domain.states import JobStatus, JobEvent, QueueStatus

from conftest import TENANT_ID


async def count(session_factory, model, *where):
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model).where(*where))


class TestAdmitJob:
    async def test_creates_pending_job_with_event_and_queue_entry(self, session_factory, tenant, spec):
        async with session_factory() as session:
            admission = await admit_job(session, TENANT_ID, spec)

        assert admission.deduped is False
        assert admission.status == JobStatus.PENDING

        async with session_factory() as session:
            job = await session.get(Job, admission.job_id)
            entry = await session.get(QueueEntry, admission.job_id)
            events = (await session.scalars(select(JobEventLog).where(JobEventLog.job_id == job.id))).all()

        assert job.status == JobStatus.PENDING
        assert job.fingerprint and len(job.fingerprint) == 64
        assert job.dry_run is False and job.max_items == 100
        assert entry.status == QueueStatus.WAITING
        assert entry.attempts == 0
        assert [e.event_type for e in events] == [JobEvent.CREATED]

    async def test_identical_request_is_deduped(self, session_factory, tenant, spec):
        async with session_factory() as session:
            first = await admit_job(session, TENANT_ID, spec)
        async with session_factory() as session:
            second = await admit_job(session, TENANT_ID, spec)

        assert second.deduped is True
        assert second.job_id == first.job_id
        assert await count(session_factory, Job) == 1
        assert await count(session_factory, QueueEntry) == 1

    async def test_different_spec_creates_new_job(self, session_factory, tenant, spec):
        async with session_factory() as session:
            first = await admit_job(session, TENANT_ID, spec)
        async with session_factory() as session:
            second = await admit_job(session, TENANT_ID, replace(spec, value="winter"))

        assert second.deduped is False
        assert second.job_id != first.job_id

    async def test_terminal_job_does_not_block_new_admission(self, session_factory, tenant, spec):
        async with session_factory() as session:
            first = await admit_job(session, TENANT_ID, spec)
        async with session_factory() as session:
            job = await session.get(Job, first.job_id)
            job.status = JobStatus.COMPLETED
            await session.commit()

        async with session_factory() as session:
            second = await admit_job(session, TENANT_ID, spec)

        assert second.deduped is False
        assert second.job_id != first.job_id

    async def test_running_job_still_dedupes(self, session_factory, tenant, spec):
        async with session_factory() as session:
            first = await admit_job(session, TENANT_ID, spec)
        async with session_factory() as session:
            job = await session.get(Job, first.job_id)
            job.status = JobStatus.RUNNING
            await session.commit()

        async with session_factory() as session:
            second = await admit_job(session, TENANT_ID, spec)

        assert second.deduped is True
        assert second.status == JobStatus.RUNNING

    async def test_concurrent_identical_admissions_yield_one_job(self, session_factory, tenant, spec):
        async def admit():
            async with session_factory() as session:
                return await admit_job(session, TENANT_ID, spec)

        results = await asyncio.gather(*(admit() for _ in range(10)))

        assert len({r.job_id for r in results}) == 1
        assert sum(1 for r in results if not r.deduped) == 1
        assert await count(session_factory, Job, Job.status.in_([JobStatus.PENDING, JobStatus.RUNNING])) == 1
