"""
Bounded async retry with exponential backoff.

Delay before retry n (0-based) is ``retry_delay * 2 ** n`` capped at
``max_delay``. Retries are never infinite: ``retries`` is the number of
additional attempts after the first one.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

from nrinstall.core.config import settings
from nrinstall.core.logging_config import logger

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential backoff: base * 2^attempt, capped"""
    return min(base_delay * (2 ** attempt), max_delay)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    retries: int = 3,
    retry_delay: Optional[float] = None,
    max_delay: Optional[float] = None,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    on_error: Optional[Callable[[BaseException], Awaitable[Any]]] = None,
    on_retry: Optional[Callable[[int, BaseException, float], Any]] = None,
    description: str = "operation",
) -> T:
    """
    Run ``operation`` with up to ``retries`` retries.

    Args:
        operation: Zero-argument coroutine function
        retries: Additional attempts after the first (0 = run once)
        retry_delay: Base delay in seconds
        max_delay: Upper bound for a single delay
        retry_on: Exception types that trigger a retry; others propagate at once
        on_error: Awaited once with the final error before it is re-raised
        on_retry: Called with (attempt, error, delay) before each retry
        description: Name used in log lines

    Raises:
        The last error once retries are exhausted
    """
    retry_delay = settings.RETRY_BASE_DELAY if retry_delay is None else retry_delay
    max_delay = settings.RETRY_MAX_DELAY if max_delay is None else max_delay

    attempt = 0
    while True:
        try:
            return await operation()
        except retry_on as e:
            if attempt >= retries:
                if on_error is not None:
                    await on_error(e)
                raise

            delay = backoff_delay(attempt, retry_delay, max_delay)
            attempt += 1
            logger.warning(
                f"[Retry] {description} failed (attempt {attempt}/{retries + 1}): {e}. "
                f"Retrying in {delay:.1f}s"
            )
            if on_retry is not None:
                on_retry(attempt, e, delay)
            await asyncio.sleep(delay)
