from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, ConfigDict
from sqlalchemy import select

from bulkmend.api.deps import DbSession
from bulkmend.commands.requeue_expired import requeue_expired_entries
from bulkmend.commands.retry_parked import retry_parked_entry
from bulkmend.db.models import QueueEntry
from bulkmend.domain.errors import JobNotFoundError, InvalidJobStateError
from bulkmend.domain.states import QueueStatus

router = APIRouter()

class QueueEntryResponse(BaseModel):
    job_id: UUID
    tenant_id: str
    status: QueueStatus
    attempts: int
    max_attempts: int
    available_at: datetime
    last_error: Optional[str] = None
    worker_id: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)

@router.post("/requeue_expired")
async def trigger_requeue_expired(session: DbSession):
    count = await requeue_expired_entries(session)
    await session.commit()
    return {"requeued_count": count}

@router.get("/queue", response_model=list[QueueEntryResponse])
async def list_queue_entries(
    session: DbSession,
    status: QueueStatus = Query(QueueStatus.PARKED),
    limit: int = Query(50, ge=1, le=200),
):
    stmt = (
        select(QueueEntry)
        .where(QueueEntry.status == status)
        .order_by(QueueEntry.updated_at.desc())
        .limit(limit)
    )
    return (await session.scalars(stmt)).all()

@router.post("/queue/{job_id}/retry", response_model=QueueEntryResponse)
async def retry_queue_entry(job_id: UUID, session: DbSession):
    try:
        entry = await retry_parked_entry(session, job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidJobStateError as e:
        raise HTTPException(status_code=409, detail=str(e))

    await session.commit()
    return entry
