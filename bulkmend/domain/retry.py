import random
from datetime import datetime, timedelta, timezone
from typing import Optional

def backoff_delay(
    attempts: int,
    base_delay_seconds: float = 60,
    max_delay_seconds: float = 3600,
    jitter: bool = True
) -> float:
    """
    Exponential backoff delay in seconds for the retry after `attempts` failures.

    Formula:
        delay = min(base * 2 ^ (attempts - 1), max_delay)
        if jitter:
            delay = delay + random_uniform(0, 0.1 * delay)

    attempts=1 means "we failed once, when should we try again?" and yields the
    base delay. attempts <= 0 is treated as 1.
    """
    # 2^20 * base already exceeds any sensible cap.
    exponent = min(max(attempts, 1) - 1, 20)

    delay = min(base_delay_seconds * (2 ** exponent), max_delay_seconds)

    if jitter:
        # Up to 10% jitter to avoid thundering herd
        delay += random.uniform(0, delay * 0.1)

    return delay

def calculate_next_run(
    attempts: int,
    base_delay_seconds: float = 60,
    max_delay_seconds: float = 3600,
    jitter: bool = True,
    now: Optional[datetime] = None,
) -> datetime:
    """Timestamp of the next queue attempt after `attempts` failures."""
    delay = backoff_delay(attempts, base_delay_seconds, max_delay_seconds, jitter)
    return (now or datetime.now(timezone.utc)) + timedelta(seconds=delay)
