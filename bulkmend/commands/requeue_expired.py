import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bulkmend.db.models import QueueEntry, utcnow
from bulkmend.domain.states import QueueStatus
from bulkmend.api.v1.metrics import QUEUE_RETRIES, QUEUE_PARKED

logger = logging.getLogger(__name__)

LEASE_EXPIRED_ERROR = "Lease expired (worker crash?)"

async def requeue_expired_entries(session: AsyncSession, limit: int = 100) -> int:
    """
    Finds ACTIVE entries whose lease has expired and returns them to WAITING,
    counting the lost run as an attempt. Entries at their attempt limit are
    PARKED. Returns number of entries recovered or parked.

    The job itself is left as is: a job stuck in RUNNING is resumed by the next
    worker to lease it, and its tenant lock expires on its own TTL.
    """
    now = utcnow()

    stmt = select(QueueEntry).where(
        QueueEntry.status == QueueStatus.ACTIVE,
        QueueEntry.lease_expires_at < now,
    ).limit(limit).with_for_update(skip_locked=True)

    expired = (await session.scalars(stmt)).all()
    if not expired:
        return 0

    for entry in expired:
        worker_id = entry.worker_id
        entry.attempts += 1
        entry.last_error = LEASE_EXPIRED_ERROR

        if entry.attempts >= entry.max_attempts:
            entry.status = QueueStatus.PARKED
            QUEUE_PARKED.inc()
        else:
            entry.status = QueueStatus.WAITING
            entry.available_at = now
            QUEUE_RETRIES.labels(reason="lease_expired").inc()

        entry.worker_id = None
        entry.lease_token = None
        entry.lease_expires_at = None
        entry.updated_at = now

        logger.warning(
            "Reaped job %s from worker %s (attempts=%s, now %s)",
            entry.job_id, worker_id, entry.attempts, entry.status
        )

    await session.flush()
    return len(expired)
