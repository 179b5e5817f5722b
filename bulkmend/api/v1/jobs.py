from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, ConfigDict
from sqlalchemy import select

from bulkmend.api.deps import DbSession
from bulkmend.db.models import Job
from bulkmend.domain.states import JobStatus, JobEvent
from bulkmend.services.event_log import list_events

router = APIRouter()

class JobResponse(BaseModel):
    id: UUID
    tenant_id: str
    status: JobStatus
    query_string: str
    namespace: str
    key: str
    type: str
    value: str
    dry_run: bool
    max_items: int
    fingerprint: str
    matched_count: Optional[int] = None
    updated_count: Optional[int] = None
    failed_count: Optional[int] = None
    error_preview: Optional[str] = None
    bulk_operation_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)

class JobEventResponse(BaseModel):
    id: int
    event_type: JobEvent
    message: str
    timestamp: datetime
    meta: Optional[dict[str, Any]] = None
    model_config = ConfigDict(from_attributes=True)

@router.get("", response_model=list[JobResponse])
async def list_jobs(
    session: DbSession,
    tenant_id: str = Query(...),
    limit: int = Query(50, ge=1, le=200),
):
    stmt = (
        select(Job)
        .where(Job.tenant_id == tenant_id)
        .order_by(Job.created_at.desc())
        .limit(limit)
    )
    return (await session.scalars(stmt)).all()

@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: UUID, session: DbSession):
    job = await session.get(Job, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job

@router.get("/{job_id}/events", response_model=list[JobEventResponse])
async def get_job_events(job_id: UUID, session: DbSession):
    job = await session.get(Job, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return await list_events(session, job_id)
