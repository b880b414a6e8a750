import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

R = TypeVar("R")


async def retry_async(
    func: Callable[[], Awaitable[R]],
    *,
    max_attempts: int = 3,
    backoff_seconds: float = 0.2,
    description: str = "operation",
) -> R:
    """
    Await ``func()`` until it succeeds, backing off exponentially between attempts.

    Args:
        func: zero-argument coroutine factory, called once per attempt
        max_attempts: Maximum number of attempts
        backoff_seconds: Wait before the second attempt; doubled after each failure
        description: Used in log messages

    Raises:
        The last exception once every attempt has failed.
    """
    last_exception: Exception | None = None

    for attempt in range(max_attempts):
        try:
            return await func()
        except Exception as e:
            last_exception = e
            if attempt < max_attempts - 1:
                wait_time = backoff_seconds * (2**attempt)
                logger.warning(
                    "Attempt %d/%d failed for %s: %s. Retrying in %ss...",
                    attempt + 1,
                    max_attempts,
                    description,
                    e,
                    wait_time,
                )
                await asyncio.sleep(wait_time)
            else:
                logger.error("All %d attempts failed for %s: %s", max_attempts, description, e)

    if last_exception is not None:
        raise last_exception
    raise RuntimeError("Retry failed without capturing exception")
