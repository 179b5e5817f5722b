import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bulkmend.db.models import QueueEntry, utcnow
from bulkmend.domain.states import QueueStatus
from bulkmend.settings import settings

logger = logging.getLogger(__name__)

def _dialect_insert(session: AsyncSession):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
        return insert
    if dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
        return insert
    return None

async def enqueue_job(
    session: AsyncSession,
    job_id: UUID,
    tenant_id: str,
    max_attempts: Optional[int] = None
) -> bool:
    """
    Adds a queue entry for the job. The entry id is the job id, so a second
    enqueue of the same job is a no-op. Returns True if an entry was created.
    """
    values = dict(
        job_id=job_id,
        tenant_id=tenant_id,
        status=QueueStatus.WAITING,
        attempts=0,
        max_attempts=max_attempts or settings.QUEUE_MAX_ATTEMPTS,
        available_at=utcnow(),
    )

    insert = _dialect_insert(session)
    if insert is not None:
        stmt = insert(QueueEntry).values(**values).on_conflict_do_nothing(index_elements=[QueueEntry.job_id])
        result = await session.execute(stmt)
        created = result.rowcount == 1
    else:
        existing = await session.scalar(select(QueueEntry.job_id).where(QueueEntry.job_id == job_id))
        created = existing is None
        if created:
            session.add(QueueEntry(**values))
            await session.flush()

    if created:
        logger.info("Job %s enqueued (tenant=%s)", job_id, tenant_id)
    else:
        logger.info("Job %s already enqueued; ignoring duplicate", job_id)
    return created
