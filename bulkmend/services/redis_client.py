from typing import Optional

from redis.asyncio import Redis

from bulkmend.settings import settings

_redis_client: Optional[Redis] = None

def get_redis() -> Redis:
    """Process-wide Redis client for tenant locks and webhook dedup."""
    global _redis_client
    if _redis_client is None:
        _redis_client = Redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis_client

async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
