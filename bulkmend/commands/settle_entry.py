from datetime import timedelta
from typing import Optional
from uuid import UUID
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bulkmend.db.models import QueueEntry, utcnow
from bulkmend.domain.models import Outcome, Done, LockBusy, Failed
from bulkmend.domain.states import QueueStatus
from bulkmend.domain.retry import calculate_next_run
from bulkmend.api.v1.metrics import QUEUE_RETRIES, QUEUE_PARKED
from bulkmend.settings import settings

logger = logging.getLogger(__name__)

async def settle_entry(
    session: AsyncSession,
    job_id: UUID,
    outcome: Outcome,
    lease_token: Optional[UUID] = None
) -> Optional[QueueEntry]:
    """
    Applies the queue retry policy to a processed entry.

    - Done: entry is DONE.
    - LockBusy: back to WAITING after the lock retry delay; attempts untouched.
    - Failed: attempts += 1; retryable failures under the attempt limit go back
      to WAITING with exponential backoff, everything else is PARKED.

    When `lease_token` is given and no longer matches (the lease was reaped and
    the entry handed to someone else) nothing is changed and None is returned.
    The lease is cleared in every other case. Flushes but does not commit.
    """
    stmt = select(QueueEntry).where(QueueEntry.job_id == job_id).with_for_update()
    entry = await session.scalar(stmt)

    if entry is None:
        logger.warning("Cannot settle job %s: no queue entry", job_id)
        return None

    if lease_token is not None and entry.lease_token != lease_token:
        logger.warning("Cannot settle job %s: lease %s lost", job_id, lease_token)
        return None

    now = utcnow()

    if isinstance(outcome, Done):
        entry.status = QueueStatus.DONE
        logger.info("Queue entry %s done (job %s)", job_id, outcome.status)

    elif isinstance(outcome, LockBusy):
        entry.status = QueueStatus.WAITING
        entry.available_at = now + timedelta(seconds=settings.LOCK_RETRY_DELAY_SECONDS)
        QUEUE_RETRIES.labels(reason="lock_busy").inc()
        logger.info(
            "Queue entry %s waiting on tenant lock (holder=%s), retry in %ss",
            job_id, outcome.holder, settings.LOCK_RETRY_DELAY_SECONDS
        )

    elif isinstance(outcome, Failed):
        entry.attempts += 1
        entry.last_error = outcome.reason

        if outcome.retryable and entry.attempts < entry.max_attempts:
            entry.status = QueueStatus.WAITING
            entry.available_at = calculate_next_run(
                entry.attempts,
                base_delay_seconds=settings.QUEUE_BACKOFF_BASE_SECONDS,
                max_delay_seconds=settings.QUEUE_BACKOFF_MAX_SECONDS,
                now=now,
            )
            QUEUE_RETRIES.labels(reason="failure").inc()
            logger.warning(
                "Queue entry %s failed (attempt %s/%s), retry at %s: %s",
                job_id, entry.attempts, entry.max_attempts, entry.available_at, outcome.reason
            )
        else:
            entry.status = QueueStatus.PARKED
            QUEUE_PARKED.inc()
            logger.error(
                "Queue entry %s parked after %s attempt(s): %s",
                job_id, entry.attempts, outcome.reason
            )

    else:
        raise TypeError(f"Unknown outcome: {outcome!r}")

    entry.worker_id = None
    entry.lease_token = None
    entry.lease_expires_at = None
    entry.updated_at = now

    await session.flush()
    return entry
