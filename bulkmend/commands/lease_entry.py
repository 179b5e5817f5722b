from datetime import timedelta
from typing import Optional
from uuid import uuid4
import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bulkmend.db.models import QueueEntry, utcnow
from bulkmend.domain.states import QueueStatus
from bulkmend.settings import settings

logger = logging.getLogger(__name__)

async def lease_entry(
    session: AsyncSession,
    worker_id: str,
    lease_seconds: Optional[int] = None
) -> Optional[QueueEntry]:
    """
    Atomically claims the oldest waiting queue entry whose available_at has
    passed, marks it ACTIVE and stamps a fresh lease token.

    The candidate row is locked with SKIP LOCKED where the dialect supports it;
    the conditional UPDATE is the final arbiter, so two workers that picked the
    same candidate cannot both claim it. Flushes but does not commit.
    """
    duration = lease_seconds if lease_seconds is not None else settings.QUEUE_LEASE_SECONDS
    now = utcnow()

    candidate = (
        select(QueueEntry.job_id)
        .where(
            QueueEntry.status == QueueStatus.WAITING,
            QueueEntry.available_at <= now,
        )
        .order_by(QueueEntry.available_at.asc(), QueueEntry.created_at.asc())
        .with_for_update(skip_locked=True)
        .limit(1)
    )
    job_id = await session.scalar(candidate)
    if job_id is None:
        return None

    stmt = (
        update(QueueEntry)
        .where(
            QueueEntry.job_id == job_id,
            QueueEntry.status == QueueStatus.WAITING,
        )
        .values(
            status=QueueStatus.ACTIVE,
            worker_id=worker_id,
            lease_token=uuid4(),
            lease_expires_at=now + timedelta(seconds=duration),
            updated_at=now,
        )
        .returning(QueueEntry)
        .execution_options(synchronize_session=False)
    )
    entry = (await session.execute(stmt)).scalar_one_or_none()

    if entry is None:
        # Claimed by another worker between select and update
        return None

    await session.flush()
    logger.info("Worker %s leased job %s (tenant=%s, attempts=%s)", worker_id, entry.job_id, entry.tenant_id, entry.attempts)
    return entry
