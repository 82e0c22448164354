"""
Bounded retry with exponential backoff for remote backends.
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0  # seconds


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    is_retryable: Callable[[Exception], bool],
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_RETRY_DELAY,
    description: str = "operation",
) -> T:
    """
    Run an async operation, retrying transient failures.

    The first attempt is followed by at most `max_retries` retries; the
    delay before retry n (0-based) is `base_delay * 2**n`.

    Args:
        operation: Zero-argument coroutine factory
        is_retryable: Classifies an exception as transient
        max_retries: Number of retries after the first attempt
        base_delay: Delay before the first retry, in seconds
        description: Used in log messages

    Returns:
        The operation's result

    Raises:
        The last exception once retries are exhausted or the error is not
        retryable
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as e:
            logger.error(f"{description}: attempt {attempt + 1} failed: {e}")
            if attempt >= max_retries or not is_retryable(e):
                raise

            delay = base_delay * (2 ** attempt)
            logger.warning(f"{description}: retrying in {delay:.2f}s")
            await asyncio.sleep(delay)
            attempt += 1
