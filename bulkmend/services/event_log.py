from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bulkmend.db.models import JobEventLog, utcnow
from bulkmend.domain.states import JobEvent

def record_event(session: AsyncSession, job_id: UUID, event_type: JobEvent, message: str = "", **meta: Any) -> JobEventLog:
    """Appends an event to the job's trail. Persisted with the caller's transaction."""
    event = JobEventLog(
        job_id=job_id,
        event_type=event_type,
        message=message,
        timestamp=utcnow(),
        meta=meta,
    )
    session.add(event)
    return event

async def list_events(session: AsyncSession, job_id: UUID) -> list[JobEventLog]:
    stmt = select(JobEventLog).where(JobEventLog.job_id == job_id).order_by(JobEventLog.id.asc())
    return list((await session.scalars(stmt)).all())
