import asyncio
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bulkmend.api.v1.metrics import LEADER_STATUS
from bulkmend.db.session import AsyncSessionLocal
from bulkmend.scheduler.ticker import run_leader_tasks, run_metrics_tasks
from bulkmend.settings import settings
from bulkmend.utils.locking import try_advisory_xact_lock

logger = logging.getLogger(__name__)

class SchedulerService:
    """
    Periodic maintenance on every API instance. Each tick, the instance that
    wins the advisory lock runs the reaper; all instances refresh gauges.
    """

    def __init__(
        self,
        interval: Optional[float] = None,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    ):
        self.interval = interval if interval is not None else settings.REAPER_INTERVAL_SECONDS
        self.session_factory = session_factory
        self._running = False
        self._task = None

    async def start(self):
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Scheduler service started.")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        LEADER_STATUS.set(0)
        logger.info("Scheduler service stopped.")

    async def tick(self) -> bool:
        """Runs one round. Returns whether this instance ran the reaper."""
        async with self.session_factory() as session:
            # Held until run_leader_tasks commits
            is_leader = await try_advisory_xact_lock(session)
            if is_leader:
                await run_leader_tasks(session)
            else:
                await session.rollback()
                logger.debug("Reaper lock held by another instance")
            LEADER_STATUS.set(1 if is_leader else 0)

            await run_metrics_tasks(session)
        return is_leader

    async def _loop(self):
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Error in scheduler ticker: {e}", exc_info=True)
                LEADER_STATUS.set(0)

            await asyncio.sleep(self.interval)
