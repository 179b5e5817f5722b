import logging
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bulkmend.db.models import Job, QueueEntry, utcnow
from bulkmend.domain.errors import JobNotFoundError, InvalidJobStateError
from bulkmend.domain.states import QueueStatus, TERMINAL_STATUSES

logger = logging.getLogger(__name__)

async def retry_parked_entry(session: AsyncSession, job_id: UUID) -> QueueEntry:
    """
    Puts a PARKED entry back in the queue with a fresh attempt budget.
    Only entries whose job is still open can be retried; terminal jobs never
    run again. Flushes but does not commit.
    """
    entry = await session.scalar(
        select(QueueEntry).where(QueueEntry.job_id == job_id).with_for_update()
    )
    if entry is None:
        raise JobNotFoundError(job_id)

    if entry.status != QueueStatus.PARKED:
        raise InvalidJobStateError(entry.status, QueueStatus.WAITING)

    job = await session.get(Job, job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    if job.status in TERMINAL_STATUSES:
        raise InvalidJobStateError(job.status, QueueStatus.WAITING)

    now = utcnow()
    entry.status = QueueStatus.WAITING
    entry.attempts = 0
    entry.available_at = now
    entry.updated_at = now

    await session.flush()
    logger.info("Parked entry %s requeued (last error: %s)", job_id, entry.last_error)
    return entry
