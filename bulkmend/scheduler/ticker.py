import logging

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from bulkmend.api.v1.metrics import QUEUE_DEPTH
from bulkmend.commands.requeue_expired import requeue_expired_entries
from bulkmend.db.models import QueueEntry
from bulkmend.domain.states import QueueStatus

logger = logging.getLogger(__name__)

async def run_leader_tasks(session: AsyncSession) -> int:
    """Reaper: returns entries with expired worker leases to the queue."""
    reaped = await requeue_expired_entries(session)
    await session.commit()
    if reaped:
        logger.info("Reaper recovered %s queue entries", reaped)
    return reaped

async def run_metrics_tasks(session: AsyncSession) -> int:
    # Gauges are refreshed from the table rather than tracked incrementally.
    stmt = select(func.count()).select_from(QueueEntry).where(QueueEntry.status == QueueStatus.WAITING)
    depth = (await session.execute(stmt)).scalar() or 0
    QUEUE_DEPTH.set(depth)
    await session.commit()
    return depth
