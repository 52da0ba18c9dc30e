import asyncio
import random
from omnichat.utils.logger import logger


def backoff_delay(
    attempt: int,
    initial_delay: float = 0.5,
    backoff_factor: float = 2.0,
    max_delay: float = 8.0,
    jitter: bool = True,
) -> float:
    """Exponential backoff for the given 0-based attempt, capped at `max_delay`."""
    if initial_delay <= 0:
        return 0.0
    delay = min(initial_delay * (backoff_factor ** attempt), max_delay)
    if jitter:
        delay *= (0.5 + random.random())
    return delay


async def sleep_backoff(attempt: int, **kwargs) -> float:
    """Sleep for `backoff_delay(attempt, ...)` seconds and return the delay used."""
    delay = backoff_delay(attempt, **kwargs)
    if delay > 0:
        logger.debug("backoff_sleep", attempt=attempt, delay=round(delay, 2))
        await asyncio.sleep(delay)
    return delay
