"""
Bounded Retries

Wraps a single store operation so that transient failures are retried a
fixed number of times with capped exponential backoff. Anything other
than TransientStoreError propagates immediately; exhaustion re-raises
the last error so the caller can abandon its branch.
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from .errors import TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_retries(
    operation: Callable[[], Awaitable[T]],
    *,
    description: str,
    attempts: int = 3,
    base_delay: float = 0.1,
    max_delay: float = 2.0,
) -> T:
    """
    Run `operation`, retrying on TransientStoreError.

    Args:
        operation: Zero-argument coroutine factory
        description: Short label for log lines
        attempts: Total tries (>= 1)
        base_delay: First backoff in seconds
        max_delay: Backoff cap in seconds

    Returns:
        The operation's result

    Raises:
        TransientStoreError: After the last attempt fails
    """
    attempts = max(1, attempts)

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except TransientStoreError as e:
            if attempt >= attempts:
                logger.error(f"{description} failed after {attempts} attempts: {e}")
                raise
            delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
            logger.warning(
                f"{description} failed (attempt {attempt}/{attempts}): {e}; "
                f"retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)

    # unreachable: the loop either returns or raises
    raise TransientStoreError(f"{description} failed")
