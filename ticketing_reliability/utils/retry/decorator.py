"""Async retry decorator built on RetryStrategy."""

from __future__ import annotations

import asyncio
from functools import wraps
import logging
import time
from typing import TYPE_CHECKING, ParamSpec, TypeVar

from ticketing_reliability.infra.metrics.tracking import (
    track_retry_attempt,
    track_retry_exhausted,
    track_retry_success,
)

from .exceptions import RetryError, RetryStatistics
from .strategies import RetryStrategy

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")


def retry(
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    jitter_range: tuple[float, float] = (0.5, 1.5),
    exceptions: tuple[type[Exception], ...] = (Exception,),
    retry_if: Callable[[Exception], bool] | None = None,
    stop_after_delay: float | None = None,
    on_retry: Callable[[Exception, int], None] | None = None,
    strategy: RetryStrategy | None = None,
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R]]]:
    """Retry an async callable with exponential backoff.

    Pass either the individual knobs or a ready-made ``strategy``. Exceptions
    rejected by the strategy propagate immediately; once attempts (or
    ``stop_after_delay``) run out, RetryError wraps the last exception.

    Example:
        @retry(max_attempts=5, initial_delay=0.5, exceptions=(ConnectionError,))
        async def ping() -> None: ...
    """
    strategy = strategy or RetryStrategy(
        max_attempts=max_attempts,
        initial_delay=initial_delay,
        max_delay=max_delay,
        exponential_base=exponential_base,
        jitter=jitter,
        jitter_range=jitter_range,
        exceptions=exceptions,
        retry_if=retry_if,
        stop_after_delay=stop_after_delay,
    )

    def decorator(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
        operation = func.__name__

        @wraps(func)
        async def async_wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            statistics = RetryStatistics(start_time=time.monotonic())
            attempt = 0

            while True:
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    if not strategy.should_retry(e):
                        logger.warning(
                            "Non-retryable exception in %s: %s",
                            operation,
                            e,
                            extra={"function": operation, "exception": str(e)},
                        )
                        raise

                    statistics.exceptions.append(type(e).__name__)
                    elapsed = time.monotonic() - statistics.start_time
                    timed_out = (
                        strategy.stop_after_delay is not None
                        and elapsed >= strategy.stop_after_delay
                    )
                    if timed_out or strategy.is_last_attempt(attempt):
                        statistics.end_time = time.monotonic()
                        track_retry_exhausted(operation)
                        logger.error(
                            "All retry attempts exhausted for %s",
                            operation,
                            extra={
                                "function": operation,
                                "attempts": attempt + 1,
                                "last_exception": str(e),
                                "total_delay": statistics.total_delay,
                                "duration": statistics.duration,
                            },
                        )
                        raise RetryError(e, attempt + 1, statistics) from e

                    delay = strategy.calculate_delay(attempt)
                    statistics.attempts += 1
                    statistics.total_delay += delay
                    track_retry_attempt(operation, attempt + 2)

                    logger.warning(
                        "Retrying %s after %.2fs (attempt %d)",
                        operation,
                        delay,
                        attempt + 1,
                        extra={
                            "function": operation,
                            "attempt": attempt + 1,
                            "max_attempts": strategy.max_attempts,
                            "delay": delay,
                            "exception": str(e),
                        },
                    )

                    if on_retry:
                        on_retry(e, attempt + 1)

                    await asyncio.sleep(delay)
                    attempt += 1
                else:
                    if statistics.attempts > 0:
                        track_retry_success(operation, statistics.attempts + 1)
                    return result

        return async_wrapper

    return decorator
