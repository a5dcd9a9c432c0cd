"""Backoff policy shared by the retry decorator and the broker reconnect loop."""

from __future__ import annotations

import random
from collections.abc import Callable, Iterator


class RetryStrategy:
    """Exponential backoff with optional jitter and an upper bound.

    ``max_attempts=None`` means retry forever; the broker reconnect loop uses
    that mode and relies on ``max_delay`` to keep the wait bounded.
    """

    def __init__(
        self,
        max_attempts: int | None = 3,
        initial_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        jitter_range: tuple[float, float] = (0.5, 1.5),
        exceptions: tuple[type[Exception], ...] = (Exception,),
        retry_if: Callable[[Exception], bool] | None = None,
        stop_after_delay: float | None = None,
    ) -> None:
        if initial_delay < 0 or max_delay < initial_delay:
            msg = "Expected 0 <= initial_delay <= max_delay"
            raise ValueError(msg)
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.jitter_range = jitter_range
        self.exceptions = exceptions
        self.retry_if = retry_if
        self.stop_after_delay = stop_after_delay

    def should_retry(self, exception: Exception) -> bool:
        if self.retry_if is not None:
            return self.retry_if(exception)
        return isinstance(exception, self.exceptions)

    def is_last_attempt(self, attempt: int) -> bool:
        """Whether ``attempt`` (0-indexed) is the final one allowed."""
        return self.max_attempts is not None and attempt >= self.max_attempts - 1

    def calculate_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1``; never exceeds ``max_delay``."""
        delay = min(self.initial_delay * (self.exponential_base**attempt), self.max_delay)
        if self.jitter:
            delay *= random.uniform(self.jitter_range[0], self.jitter_range[1])
            delay = min(delay, self.max_delay)
        return delay

    def delays(self) -> Iterator[float]:
        """Yield successive delays until ``max_attempts`` is reached (or forever)."""
        attempt = 0
        while not self.is_last_attempt(attempt):
            yield self.calculate_delay(attempt)
            attempt += 1
