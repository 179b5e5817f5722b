"""
Drives one job through its lifecycle.

    PENDING --(tenant lock)--> RUNNING --> COMPLETED
                                      `--> FAILED

Every step is persisted in its own short transaction so the job row and its
event trail reflect progress while the remote bulk operations run, which can
take hours. The tenant lock is taken before the job starts RUNNING and is
released on every exit path.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bulkmend.commands.transition_job import transition_job
from bulkmend.db.models import Job, Tenant
from bulkmend.domain.models import Outcome, Done, LockBusy, Failed, JobSpec
from bulkmend.domain.states import JobStatus, JobEvent, TERMINAL_STATUSES
from bulkmend.platform.bulk_mutation import run_bulk_mutation
from bulkmend.platform.bulk_query import run_bulk_query
from bulkmend.platform.client import PlatformClient
from bulkmend.platform.streaming import build_error_preview
from bulkmend.services.event_log import record_event
from bulkmend.services.tenant_lock import TenantLockManager, LockExtender

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Tenant], PlatformClient]

@dataclass(frozen=True)
class _Work:
    """Detached snapshot of what a run needs, read before the lock is taken."""
    job_id: UUID
    tenant: Tenant
    spec: JobSpec

def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__

class JobProcessor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lock_manager: TenantLockManager,
        client_factory: ClientFactory = PlatformClient.for_tenant,
        extend_interval: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.lock_manager = lock_manager
        self.client_factory = client_factory
        self.extend_interval = extend_interval

    async def process(self, job_id: UUID) -> Outcome:
        """
        Runs the job if it is still open and its tenant lock is free.
        Never raises for job-level problems; they come back as an Outcome.
        """
        try:
            work = await self._load(job_id)
        except Exception as e:
            logger.exception("Failed to load job %s", job_id)
            return Failed(f"Failed to load job: {_describe(e)}", retryable=True)

        if isinstance(work, (Done, Failed)):
            return work

        holder_id = str(job_id)
        tenant_id = work.tenant.id

        if not await self.lock_manager.acquire(tenant_id, holder_id):
            holder = await self.lock_manager.holder(tenant_id)
            try:
                await self._event(job_id, JobEvent.LOCK_WAITING, "Another bulk operation is running for this tenant", holder=holder)
            except Exception:
                logger.exception("Failed to record lock wait for job %s", job_id)
            logger.info("Job %s waiting for tenant lock on %s (held by %s)", job_id, tenant_id, holder)
            return LockBusy(holder=holder)

        extender = LockExtender(self.lock_manager, tenant_id, holder_id, interval=self.extend_interval)
        extender.start()
        try:
            return await self._run(work)
        finally:
            await extender.stop()
            released = await self.lock_manager.release(tenant_id, holder_id)
            try:
                await self._event(job_id, JobEvent.LOCK_RELEASED, "Tenant lock released", released=released)
            except Exception:
                logger.exception("Failed to record lock release for job %s", job_id)

    async def _load(self, job_id: UUID):
        async with self.session_factory() as session:
            job = await session.get(Job, job_id)
            if job is None:
                logger.error("Job %s not found", job_id)
                return Failed(f"Job {job_id} not found", retryable=False)

            if job.status in TERMINAL_STATUSES:
                logger.info("Job %s already %s; nothing to do", job_id, job.status)
                return Done(JobStatus(job.status))

            tenant = await session.get(Tenant, job.tenant_id)
            if tenant is None:
                logger.error("Tenant %s for job %s not found", job.tenant_id, job_id)
                return Failed(f"Tenant {job.tenant_id} not found", retryable=True)

            spec = JobSpec(
                query_string=job.query_string,
                namespace=job.namespace,
                key=job.key,
                type=job.type,
                value=job.value,
                dry_run=job.dry_run,
                max_items=job.max_items,
            )
            return _Work(job_id=job.id, tenant=tenant, spec=spec)

    async def _run(self, work: _Work) -> Outcome:
        job_id = work.job_id

        try:
            await self._event(job_id, JobEvent.LOCK_ACQUIRED, "Tenant lock acquired")
            await self._start(job_id)
        except Exception as e:
            # Job is still PENDING; safe to retry later.
            logger.exception("Failed to start job %s", job_id)
            return Failed(f"Failed to start job: {_describe(e)}", retryable=True)

        try:
            status = await self._execute(work)
            return Done(status)
        except Exception as e:
            reason = _describe(e)
            logger.error("Job %s failed: %s", job_id, reason, exc_info=True)
            if await self._fail(job_id, reason):
                return Failed(reason, retryable=False)
            # Still RUNNING; a retry resumes it.
            return Failed(reason, retryable=True)

    async def _start(self, job_id: UUID) -> None:
        async with self.session_factory() as session:
            job = await session.get(Job, job_id)
            if job.status == JobStatus.RUNNING:
                # A previous worker died mid-run; resume from the query stage.
                logger.warning("Job %s found RUNNING, resuming", job_id)
                record_event(session, job_id, JobEvent.STARTED, "Job resumed after interruption", resumed=True)
            else:
                await transition_job(session, job, JobStatus.RUNNING, "Job started processing")
            await session.commit()

    async def _execute(self, work: _Work) -> JobStatus:
        job_id = work.job_id
        spec = work.spec

        async with self.client_factory(work.tenant) as client:
            await self._event(job_id, JobEvent.QUERY_STARTED, "Starting bulk query")
            product_ids = await run_bulk_query(client, spec.query_string, spec.max_items)
            matched = len(product_ids)

            async with self.session_factory() as session:
                job = await session.get(Job, job_id)
                job.matched_count = matched
                record_event(session, job_id, JobEvent.QUERY_COMPLETED, f"Bulk query completed: {matched} products matched", matched_count=matched)
                await session.commit()

            if spec.dry_run:
                await self._complete(job_id, f"Dry run completed: {matched} products matched")
                logger.info("Dry run job %s completed (matched=%s)", job_id, matched)
                return JobStatus.COMPLETED

            if matched == 0:
                await self._complete(job_id, "No products matched query", updated_count=0, failed_count=0)
                logger.info("Job %s completed with 0 matches", job_id)
                return JobStatus.COMPLETED

            await self._event(job_id, JobEvent.MUTATION_STARTED, f"Starting bulk mutation for {matched} products")
            result = await run_bulk_mutation(client, product_ids, spec.field_spec)

        async with self.session_factory() as session:
            job = await session.get(Job, job_id)
            job.updated_count = result.updated_count
            job.failed_count = result.failed_count
            job.error_preview = result.error_preview
            job.bulk_operation_id = result.bulk_operation_id
            record_event(
                session,
                job_id,
                JobEvent.MUTATION_COMPLETED,
                f"Bulk mutation completed: {result.updated_count} updated, {result.failed_count} failed",
                bulk_operation_ids=result.operation_ids,
            )
            await transition_job(session, job, JobStatus.COMPLETED, "Job completed successfully")
            await session.commit()

        logger.info("Job %s completed (updated=%s, failed=%s)", job_id, result.updated_count, result.failed_count)
        return JobStatus.COMPLETED

    async def _complete(self, job_id: UUID, message: str, **counts: int) -> None:
        async with self.session_factory() as session:
            job = await session.get(Job, job_id)
            for name, value in counts.items():
                setattr(job, name, value)
            await transition_job(session, job, JobStatus.COMPLETED, message)
            await session.commit()

    async def _fail(self, job_id: UUID, reason: str) -> bool:
        try:
            async with self.session_factory() as session:
                job = await session.get(Job, job_id)
                if job.status != JobStatus.RUNNING:
                    logger.warning("Job %s is %s, not marking FAILED", job_id, job.status)
                    return job.status in TERMINAL_STATUSES
                job.error_preview = build_error_preview([reason])
                await transition_job(session, job, JobStatus.FAILED, f"Job failed: {reason}")
                await session.commit()
            return True
        except Exception:
            logger.exception("Failed to record failure for job %s", job_id)
            return False

    async def _event(self, job_id: UUID, event_type: JobEvent, message: str, **meta) -> None:
        async with self.session_factory() as session:
            record_event(session, job_id, event_type, message, **meta)
            await session.commit()
