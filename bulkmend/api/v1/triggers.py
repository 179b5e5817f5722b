import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from bulkmend.api.deps import DbSession, RedisClient
from bulkmend.auth.security import TriggerSignatureVerifier
from bulkmend.commands.admit_job import admit_job
from bulkmend.db.models import Job, Tenant
from bulkmend.domain.states import JobStatus
from bulkmend.domain.trigger import TriggerRejected, parse_trigger
from bulkmend.services.webhook_dedup import WebhookDedup

logger = logging.getLogger(__name__)

router = APIRouter()

WEBHOOK_ID_HEADER = "X-Trigger-Webhook-Id"

class TriggerResponse(BaseModel):
    job_id: UUID
    deduped: bool
    status: JobStatus

async def _replayed(session: AsyncSession, job_id: str) -> Optional[TriggerResponse]:
    try:
        job = await session.get(Job, UUID(job_id))
    except ValueError:
        return None
    if not job:
        return None
    return TriggerResponse(job_id=job.id, deduped=True, status=job.status)

@router.post(
    "/bulk-update",
    response_model=TriggerResponse,
    dependencies=[Depends(TriggerSignatureVerifier())],
)
async def trigger_bulk_update(
    request: Request,
    session: DbSession,
    redis: RedisClient,
    webhook_id: Optional[str] = Header(default=None, alias=WEBHOOK_ID_HEADER),
):
    """
    Admits a bulk update. Answers as soon as the job is recorded; the caller
    may safely retry, since identical requests resolve to the same open job.
    """
    try:
        raw = await request.json()
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"errors": [{"field": "", "message": "body must be valid JSON"}]},
        )

    result = parse_trigger(raw)
    if isinstance(result, TriggerRejected):
        logger.info("Trigger rejected: %s", result.errors)
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail={"errors": result.errors})

    try:
        dedup = WebhookDedup(redis)
        seen_job_id = await dedup.lookup(webhook_id)
        if seen_job_id:
            replay = await _replayed(session, seen_job_id)
            if replay:
                return replay

        tenant = await session.get(Tenant, result.tenant_id)
        if not tenant:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found")

        admission = await admit_job(session, result.tenant_id, result.spec)
        await dedup.remember(webhook_id, str(admission.job_id))

    except HTTPException:
        raise
    except Exception:
        logger.exception("Trigger admission failed for tenant %s", result.tenant_id)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Temporarily unavailable, retry")

    return TriggerResponse(job_id=admission.job_id, deduped=admission.deduped, status=admission.status)
