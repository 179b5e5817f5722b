import logging
from typing import Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from bulkmend.api.v1.metrics import JOBS_ADMITTED
from bulkmend.commands.enqueue import enqueue_job
from bulkmend.db.models import Job
from bulkmend.domain.fingerprint import compute_fingerprint
from bulkmend.domain.models import Admission, JobSpec
from bulkmend.domain.states import JobStatus, JobEvent, OPEN_STATUSES
from bulkmend.services.event_log import record_event

logger = logging.getLogger(__name__)

# A conflicting open job can finish between our failed insert and the
# follow-up read; in that case the insert is simply tried again.
MAX_ADMISSION_ATTEMPTS = 3

async def find_open_job(session: AsyncSession, tenant_id: str, fingerprint: str) -> Optional[Job]:
    stmt = select(Job).where(
        Job.tenant_id == tenant_id,
        Job.fingerprint == fingerprint,
        Job.status.in_(OPEN_STATUSES),
    )
    return await session.scalar(stmt)

async def admit_job(session: AsyncSession, tenant_id: str, spec: JobSpec) -> Admission:
    """
    Creates a PENDING job for the requested update, or returns the open job that
    already carries the same fingerprint.

    The partial unique index on (tenant_id, fingerprint) for open jobs is the
    arbiter: a constraint violation on insert is the duplicate path, so
    concurrent identical admissions converge on one job. Commits the session.
    """
    fingerprint = compute_fingerprint(tenant_id, spec)

    for _ in range(MAX_ADMISSION_ATTEMPTS):
        existing = await find_open_job(session, tenant_id, fingerprint)
        if existing:
            return await _deduped(session, existing, fingerprint)

        job_id = uuid4()
        job = Job(
            id=job_id,
            tenant_id=tenant_id,
            status=JobStatus.PENDING,
            query_string=spec.query_string,
            namespace=spec.namespace,
            key=spec.key,
            type=spec.type,
            value=spec.value,
            dry_run=spec.dry_run,
            max_items=spec.max_items,
            fingerprint=fingerprint,
        )

        try:
            session.add(job)
            await session.flush()
            record_event(session, job_id, JobEvent.CREATED, "Job created and enqueued", dry_run=spec.dry_run)
            await enqueue_job(session, job_id, tenant_id)
            await session.commit()
        except IntegrityError:
            # Race: an identical admission committed first
            await session.rollback()
            existing = await find_open_job(session, tenant_id, fingerprint)
            if existing:
                return await _deduped(session, existing, fingerprint)
            continue

        JOBS_ADMITTED.labels(deduped="false").inc()
        logger.info("Job %s created (tenant=%s, dry_run=%s, max_items=%s)", job_id, tenant_id, spec.dry_run, spec.max_items)
        return Admission(job_id=job_id, deduped=False, status=JobStatus.PENDING)

    raise RuntimeError(f"Admission for tenant {tenant_id} did not converge after {MAX_ADMISSION_ATTEMPTS} attempts")

async def _deduped(session: AsyncSession, job: Job, fingerprint: str) -> Admission:
    admission = Admission(job_id=job.id, deduped=True, status=JobStatus(job.status))

    # No-op unless the open job somehow lost its entry
    await enqueue_job(session, job.id, job.tenant_id)
    await session.commit()

    JOBS_ADMITTED.labels(deduped="true").inc()
    logger.warning("Duplicate job detected: %s (fingerprint=%s)", admission.job_id, fingerprint[:12])
    return admission
