"""
Retry Utilities.

Provides retry mechanisms with exponential backoff for network operations.
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_delay(
    delay: float, jitter: bool, retry_after: Optional[float] = None
) -> float:
    """Return the sleep before the next attempt.

    A server supplied ``retry_after`` takes precedence over the backoff delay.
    """
    if retry_after is not None:
        return max(retry_after, 0.0)
    if jitter:
        return delay * (0.5 + random.random())
    return delay


async def call_with_backoff(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_attempt: Optional[Callable[[int], None]] = None,
    **kwargs: Any,
) -> T:
    """Await ``func`` retrying on ``exceptions`` with exponential backoff.

    Exceptions outside ``exceptions`` propagate immediately. After
    ``max_attempts`` failed attempts the last exception is re-raised.

    Args:
        func: Coroutine function to call
        max_attempts: Total number of attempts, including the first
        initial_delay: Delay before the second attempt in seconds
        max_delay: Upper bound for any single delay in seconds
        exponential_base: Growth factor between consecutive delays
        jitter: Whether to add random jitter to delays
        exceptions: Exceptions that trigger a retry
        on_attempt: Optional callback receiving the 1-based attempt number
    """
    delay = initial_delay

    for attempt in range(1, max_attempts + 1):
        if on_attempt is not None:
            on_attempt(attempt)
        try:
            return await func(*args, **kwargs)
        except exceptions as e:
            if attempt == max_attempts:
                logger.error("Failed after %d attempts: %s", max_attempts, e)
                raise

            actual_delay = min(
                compute_delay(delay, jitter, getattr(e, "retry_after", None)),
                max_delay,
            )
            logger.warning(
                "Attempt %d failed: %s. Retrying in %.2f seconds...",
                attempt,
                e,
                actual_delay,
            )
            await asyncio.sleep(actual_delay)

            # Calculate next delay
            delay = min(delay * exponential_base, max_delay)

    raise RuntimeError("max_attempts must be at least 1")


__all__ = ["call_with_backoff", "compute_delay"]
