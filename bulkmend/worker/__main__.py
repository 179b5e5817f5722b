import asyncio
import logging

from bulkmend.db.session import AsyncSessionLocal, create_schema
from bulkmend.logging_config import setup_logging
from bulkmend.services.redis_client import get_redis, close_redis
from bulkmend.services.tenant_lock import TenantLockManager
from bulkmend.settings import settings
from bulkmend.worker import JobProcessor, WorkerPool

logger = logging.getLogger("bulkmend.worker")

async def main():
    setup_logging()
    await create_schema()

    processor = JobProcessor(AsyncSessionLocal, TenantLockManager(get_redis()))
    pool = WorkerPool(AsyncSessionLocal, processor, concurrency=settings.WORKER_CONCURRENCY)
    try:
        await pool.run()
    finally:
        await close_redis()

if __name__ == "__main__":
    asyncio.run(main())
