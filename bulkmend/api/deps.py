from typing import Annotated

from fastapi import Depends
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from bulkmend.db.session import get_db_session
from bulkmend.services.redis_client import get_redis

# Dependency for DB session
DbSession = Annotated[AsyncSession, Depends(get_db_session)]

# Shared Redis client (webhook dedup)
RedisClient = Annotated[Redis, Depends(get_redis)]
