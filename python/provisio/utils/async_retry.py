"""
provisio/utils/async_retry.py

Provides a decorator to retry an async function with bounded exponential backoff.
"""

import asyncio
import logging
import random
from typing import Any, Callable, Coroutine, Tuple, Type
from typing_extensions import ParamSpec, TypeVar

P = ParamSpec("P")
R = TypeVar("R")

logger = logging.getLogger(__name__)


def backoff_delay(
    attempt_number: int,
    base_delay: float,
    max_delay: float,
    jitter: bool = False,
) -> float:
    """Delay before the attempt following `attempt_number` (1-based).

    base_delay * 2 ** (attempt_number - 1), capped at max_delay. With jitter the
    delay is drawn uniformly from [delay / 2, delay].
    """
    delay = min(max_delay, base_delay * (2 ** (attempt_number - 1)))
    if jitter:
        delay = random.uniform(delay / 2, delay)
    return delay


def async_retry(
    retries: int = 3,
    delay: float = 1.0,
    max_delay: float = 30.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    jitter: bool = False,
    noisy: bool = False,
) -> Callable[
    [Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]
]:
    """Decorates an async function to retry upon failure.

    The decorated function will be attempted up to `retries` times. Only exceptions
    matching `retry_on` are retried; anything else propagates immediately. The wait
    between attempts starts at `delay` and doubles each time, never exceeding
    `max_delay`. If `noisy` is True, logs warnings on each failure and an error on
    the final failure.

    Args:
        retries (int, optional):
            Maximum number of total attempts (not just failures). Defaults to 3.
        delay (float, optional):
            First delay in seconds between attempts. Defaults to 1.0.
        max_delay (float, optional):
            Upper bound for any single delay. Defaults to 30.0.
        retry_on (Tuple[Type[BaseException], ...], optional):
            Exception types that trigger a retry. Defaults to (Exception,).
        jitter (bool, optional):
            Randomize each delay between half and full length. Defaults to False.
        noisy (bool, optional):
            If True, logs a warning on each failure and an error if all attempts fail.
            Defaults to False.

    Returns:
        A decorator that, when applied to an async function, returns a wrapped
        version that retries on matching exceptions.
    """

    def decorator(
        func: Callable[P, Coroutine[Any, Any, R]]
    ) -> Callable[P, Coroutine[Any, Any, R]]:
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            async def attempt(remaining: int, attempt_number: int) -> R:
                try:
                    return await func(*args, **kwargs)
                except retry_on as exc:
                    if noisy:
                        logger.warning(
                            "Attempt %d/%d for %r failed: %s",
                            attempt_number,
                            retries,
                            func.__qualname__,
                            exc,
                        )
                    # If we have remaining attempts, retry
                    if remaining > 1:
                        await asyncio.sleep(
                            backoff_delay(attempt_number, delay, max_delay, jitter)
                        )
                        return await attempt(remaining - 1, attempt_number + 1)

                    # Otherwise, no more attempts left
                    if noisy:
                        logger.error(
                            "All %d attempts failed for %r",
                            retries,
                            func.__qualname__,
                        )
                    raise

            return await attempt(retries, 1)

        return wrapper

    return decorator
