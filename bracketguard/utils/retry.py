"""
Backoff for idempotent exchange reads.

Writes (placement, cancels) are never wrapped: a cancel that failed is
retried by the next reconciliation pass, and a repeated batch placement
would open a second position.
"""
import asyncio
import functools
import random
from typing import Callable, Optional, Tuple, Type

from bracketguard.exceptions import NetworkError, RateLimitError
from bracketguard.monitoring.logger import get_logger

logger = get_logger(__name__)

DEFAULT_TRANSIENT_ERRORS: Tuple[Type[Exception], ...] = (NetworkError, RateLimitError)


def backoff_delays(max_retries: int, base_delay: float, max_backoff: float):
    """Yield max_retries delays: doubling from base_delay, capped, plus up to 0.5s jitter."""
    delay = base_delay
    for _ in range(max_retries):
        yield min(delay, max_backoff) + random.uniform(0, 0.5)
        delay *= 2


def retry_on_transient_errors(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_backoff: float = 10.0,
    transient_errors: Optional[Tuple[Type[Exception], ...]] = None
):
    """
    Decorator retrying an async read on transient errors.

    Args:
        max_retries: Retries after the first attempt
        base_delay: First wait in seconds
        max_backoff: Cap for a single wait in seconds
        transient_errors: Exception types to retry; NetworkError and RateLimitError by default
    """
    retry_on = transient_errors or DEFAULT_TRANSIENT_ERRORS

    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            delays = backoff_delays(max_retries, base_delay, max_backoff)
            attempt = 1
            while True:
                try:
                    return await func(*args, **kwargs)
                except retry_on as e:
                    delay = next(delays, None)
                    if delay is None:
                        logger.warning("RETRY_EXHAUSTED", func=func.__name__, attempts=attempt, error=str(e))
                        raise
                    logger.info(
                        "RETRY_SCHEDULED",
                        func=func.__name__,
                        attempt=attempt,
                        max_retries=max_retries,
                        wait_seconds=round(delay, 2),
                        error_type=type(e).__name__,
                    )
                    await asyncio.sleep(delay)
                    attempt += 1

        return wrapper
    return decorator
