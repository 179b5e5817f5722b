from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

# Fixed 64-bit key for the reaper lock.
REAPER_LOCK_KEY = 84728473

async def try_advisory_xact_lock(session: AsyncSession, key: int = REAPER_LOCK_KEY) -> bool:
    """
    Attempts to acquire a Postgres transaction-level advisory lock.
    Returns True if acquired, False otherwise. The lock is released when the
    session's current transaction commits or rolls back.

    Other dialects have no advisory locks; every instance is treated as the
    holder there, which is only appropriate for single-instance setups.
    """
    if session.get_bind().dialect.name != "postgresql":
        return True

    result = await session.execute(
        text("SELECT pg_try_advisory_xact_lock(:key)"),
        {"key": key}
    )
    return result.scalar() is True
