import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.exc import DBAPIError, OperationalError

from bulkmend.api.v1.admin import router as admin_router
from bulkmend.api.v1.jobs import router as jobs_router
from bulkmend.api.v1.metrics import router as metrics_router
from bulkmend.api.v1.triggers import router as triggers_router
from bulkmend.logging_config import setup_logging
from bulkmend.settings import settings

logger = logging.getLogger("uvicorn")

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    from bulkmend.db.session import create_schema
    from bulkmend.scheduler.service import SchedulerService
    from bulkmend.services.redis_client import close_redis

    setup_logging()

    # 1. Create tables (retry while the database is still coming up)
    for i in range(10):
        try:
            await create_schema()
            logger.info("Database schema ready")
            break
        except (OperationalError, DBAPIError, OSError) as e:
            logger.warning(f"Schema bootstrap: database not ready, retrying in 2s... ({i+1}/10): {e}")
            await asyncio.sleep(2)
    else:
        logger.error("Schema bootstrap failed; continuing, requests will fail until the database is reachable")

    # 2. Start Scheduler (Reaper/Gauges)
    scheduler = SchedulerService()
    await scheduler.start()

    yield

    # Shutdown
    await scheduler.stop()
    await close_redis()

app = FastAPI(
    title=settings.PROJECT_NAME,
    lifespan=lifespan
)

app.include_router(triggers_router, prefix="/api/v1/triggers", tags=["triggers"])
app.include_router(jobs_router, prefix="/api/v1/jobs", tags=["jobs"])
app.include_router(admin_router, prefix="/api/v1/admin", tags=["admin"])
app.include_router(metrics_router, tags=["metrics"])

@app.get("/health")
async def health():
    return {"status": "ok"}
