import asyncio
import logging
import signal
import socket
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bulkmend.commands.heartbeat import heartbeat_entry
from bulkmend.commands.lease_entry import lease_entry
from bulkmend.commands.settle_entry import settle_entry
from bulkmend.domain.errors import LeaseNotFoundError
from bulkmend.domain.models import Outcome
from bulkmend.settings import settings
from bulkmend.worker.processor import JobProcessor

logger = logging.getLogger(__name__)

class WorkerRunner:
    """Leases one queue entry at a time, processes it and settles the outcome."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        processor: JobProcessor,
        worker_id: str,
        lease_seconds: Optional[int] = None,
        idle_seconds: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.processor = processor
        self.worker_id = worker_id
        self.lease_seconds = lease_seconds if lease_seconds is not None else settings.QUEUE_LEASE_SECONDS
        self.idle_seconds = idle_seconds if idle_seconds is not None else settings.WORKER_IDLE_SECONDS
        # Renew well before the queue lease lapses
        self.heartbeat_interval = max(self.lease_seconds / 3, 1.0)
        self.running = False
        self._shutdown_event = asyncio.Event()

    async def run(self):
        self.running = True
        self._shutdown_event.clear()
        logger.info(f"Worker {self.worker_id} started")

        try:
            while self.running:
                try:
                    if not await self.run_once():
                        await self._wait(self.idle_seconds)

                except Exception as e:
                    logger.exception("Error in runner loop for worker %s: %s", self.worker_id, e)
                    await self._wait(5.0)
        finally:
            logger.info(f"Worker {self.worker_id} stopped")

    def stop(self):
        self.running = False
        self._shutdown_event.set()

    async def _wait(self, timeout: float):
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def run_once(self) -> bool:
        """Processes at most one entry. Returns False when the queue had nothing ready."""
        async with self.session_factory() as session:
            entry = await lease_entry(session, self.worker_id, self.lease_seconds)
            await session.commit()

        if entry is None:
            return False

        await self.process_entry(entry.job_id, entry.lease_token)
        return True

    async def process_entry(self, job_id: UUID, lease_token: UUID) -> Outcome:
        logger.info(f"Processing job {job_id}")

        heartbeat_task = asyncio.create_task(self._heartbeat_loop(job_id, lease_token))
        try:
            outcome = await self.processor.process(job_id)
        finally:
            heartbeat_task.cancel()
            try:
                await heartbeat_task
            except asyncio.CancelledError:
                pass

        async with self.session_factory() as session:
            settled = await settle_entry(session, job_id, outcome, lease_token=lease_token)
            await session.commit()

        if settled is None:
            logger.error("Job %s processed (%s) but its queue lease was lost", job_id, outcome)
        else:
            logger.info("Job %s settled: %s -> entry %s", job_id, outcome, settled.status)
        return outcome

    async def _heartbeat_loop(self, job_id: UUID, lease_token: UUID):
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                async with self.session_factory() as session:
                    await heartbeat_entry(session, job_id, lease_token, self.lease_seconds)
                    await session.commit()
                logger.debug(f"Heartbeat sent for {job_id}")
            except LeaseNotFoundError:
                logger.warning(f"Heartbeat failed for {job_id}: lease lost")
                break
            except Exception as e:
                logger.warning(f"Heartbeat error for {job_id}: {e}")

class WorkerPool:
    """Runs a fixed number of runners in one process; stops them on SIGINT/SIGTERM."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        processor: JobProcessor,
        concurrency: Optional[int] = None,
        name: Optional[str] = None,
    ):
        size = concurrency or settings.WORKER_CONCURRENCY
        prefix = name or socket.gethostname()
        self.runners = [
            WorkerRunner(session_factory, processor, worker_id=f"{prefix}-{i}")
            for i in range(size)
        ]

    async def run(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except NotImplementedError:
                # Windows support
                pass

        logger.info("Starting worker pool with %s runners", len(self.runners))
        await asyncio.gather(*(runner.run() for runner in self.runners))

    def stop(self):
        logger.info("Shutdown signal received")
        for runner in self.runners:
            runner.stop()
