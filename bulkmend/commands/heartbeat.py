from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from bulkmend.db.models import QueueEntry, utcnow
from bulkmend.domain.states import QueueStatus
from bulkmend.domain.errors import LeaseNotFoundError
from bulkmend.settings import settings

async def heartbeat_entry(
    session: AsyncSession,
    job_id: UUID,
    lease_token: UUID,
    extend_seconds: Optional[int] = None
) -> datetime:
    """
    Renews the queue lease of an active entry.
    Raises LeaseNotFoundError if the entry is no longer active under this token
    (settled, reaped, or re-leased by another worker). Returns new expires_at.
    """
    duration = extend_seconds if extend_seconds is not None else settings.QUEUE_LEASE_SECONDS
    now = utcnow()
    new_expires_at = now + timedelta(seconds=duration)

    stmt = (
        update(QueueEntry)
        .where(
            QueueEntry.job_id == job_id,
            QueueEntry.lease_token == lease_token,
            QueueEntry.status == QueueStatus.ACTIVE,
        )
        .values(lease_expires_at=new_expires_at, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)

    if result.rowcount != 1:
        raise LeaseNotFoundError(f"Lease for job {job_id} not found or token mismatch")

    await session.flush()
    return new_expires_at
