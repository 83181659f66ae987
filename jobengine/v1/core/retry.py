"""
Bounded local retries for transient infrastructure errors.

Broker hiccups and database timeouts are retried here, at the calling
layer, so they never turn into a job's terminal state.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from jobengine.config.logging import get_logger
from jobengine.v1.core.exceptions import TransientRetryError

logger = get_logger(__name__)

T = TypeVar("T")


async def retry_transient(
    operation: str,
    func: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 0.2,
    max_delay: float = 5.0,
    exceptions: tuple[type[BaseException], ...] = (Exception,),
) -> T:
    """
    Await ``func()`` up to ``attempts`` times with exponential backoff.

    Args:
        operation: Name used in logs and in the final error
        func: Zero-argument coroutine factory, called once per attempt
        attempts: Total number of tries (1 = no retry)
        base_delay: Delay before the second try in seconds
        max_delay: Cap for a single delay in seconds
        exceptions: Exception types considered transient

    Raises:
        TransientRetryError: When every attempt failed
    """
    last_error: BaseException | None = None

    for attempt in range(1, attempts + 1):
        try:
            return await func()
        except exceptions as e:
            last_error = e
            if attempt == attempts:
                break

            delay = min(max_delay, base_delay * (2 ** (attempt - 1)))
            delay += delay * 0.1 * random.random()
            logger.warning(
                "Transient failure, retrying",
                operation=operation,
                attempt=attempt,
                delay_s=round(delay, 3),
                error=str(e),
            )
            await asyncio.sleep(delay)

    assert last_error is not None
    raise TransientRetryError(operation, attempts, last_error) from last_error
