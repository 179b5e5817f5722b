from typing import Any
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from bulkmend.db.models import Job, utcnow, as_utc
from bulkmend.domain.states import JobStatus, JobEvent, ALLOWED_TRANSITIONS, TERMINAL_STATUSES
from bulkmend.domain.errors import InvalidJobStateError
from bulkmend.services.event_log import record_event
from bulkmend.api.v1.metrics import JOB_DURATION, JOBS_FINISHED

logger = logging.getLogger(__name__)

TRANSITION_EVENTS = {
    JobStatus.RUNNING: JobEvent.STARTED,
    JobStatus.COMPLETED: JobEvent.COMPLETED,
    JobStatus.FAILED: JobEvent.FAILED,
}

async def transition_job(
    session: AsyncSession,
    job: Job,
    target: JobStatus,
    message: str = "",
    **meta: Any
) -> Job:
    """
    Moves a job along PENDING -> RUNNING -> COMPLETED | FAILED and appends the
    matching event. Anything else (skips, leaving a terminal state) raises
    InvalidJobStateError. Flushes but does not commit.
    """
    current = JobStatus(job.status)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidJobStateError(current, target)

    now = utcnow()
    job.status = target
    job.updated_at = now

    if target == JobStatus.RUNNING:
        job.started_at = now
    elif target in TERMINAL_STATUSES:
        job.finished_at = now
        JOBS_FINISHED.labels(status=target.value).inc()
        started_at = as_utc(job.started_at)
        if started_at:
            duration = (now - started_at).total_seconds()
            if duration > 0:
                JOB_DURATION.observe(duration)

    record_event(session, job.id, TRANSITION_EVENTS[target], message, **meta)
    await session.flush()

    logger.info("Job %s %s -> %s", job.id, current, target)
    return job
