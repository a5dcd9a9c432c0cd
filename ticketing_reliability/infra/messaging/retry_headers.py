"""Bounded consumer retries tracked in message headers.

A failed message is republished to its queue with an incremented
``x-retry-count`` header, so the count survives broker restarts and is
visible to every consumer instance. Once the count reaches the configured
budget, or the failure can never succeed, the message is rejected without
requeue and the broker dead-letters it.
"""

from __future__ import annotations

from dataclasses import dataclass
import threading
import time
from typing import Any

from pydantic import ValidationError

from ticketing_reliability.core.exceptions import MessageSerializationError

RETRY_COUNT_HEADER = "x-retry-count"
RETRY_FIRST_ATTEMPT_HEADER = "x-retry-first-attempt-ms"
RETRY_LAST_ERROR_HEADER = "x-retry-last-error"
RETRY_LAST_ERROR_TYPE_HEADER = "x-retry-last-error-type"

# Keep headers small
MAX_ERROR_LENGTH = 500


@dataclass(frozen=True, slots=True)
class RetryState:
    """Retry history read from / written to message headers.

    Example:
        state = RetryState.from_headers(message.headers)
        if state.count >= max_retries:
            await message.reject(requeue=False)
        else:
            headers = {**message.headers, **state.increment(exc).to_headers()}
    """

    count: int = 0
    first_attempt_ms: int = 0
    last_error: str = ""
    last_error_type: str = ""

    @classmethod
    def from_headers(cls, headers: dict[str, Any] | None) -> RetryState:
        """Read the state; missing or malformed headers count as a fresh message."""
        if not headers:
            return cls()
        return cls(
            count=_safe_int(headers.get(RETRY_COUNT_HEADER)),
            first_attempt_ms=_safe_int(headers.get(RETRY_FIRST_ATTEMPT_HEADER)),
            last_error=_as_str(headers.get(RETRY_LAST_ERROR_HEADER))[:MAX_ERROR_LENGTH],
            last_error_type=_as_str(headers.get(RETRY_LAST_ERROR_TYPE_HEADER)),
        )

    def to_headers(self) -> dict[str, Any]:
        return {
            RETRY_COUNT_HEADER: self.count,
            RETRY_FIRST_ATTEMPT_HEADER: self.first_attempt_ms,
            RETRY_LAST_ERROR_HEADER: self.last_error[:MAX_ERROR_LENGTH],
            RETRY_LAST_ERROR_TYPE_HEADER: self.last_error_type,
        }

    def increment(self, error: Exception) -> RetryState:
        return RetryState(
            count=self.count + 1,
            first_attempt_ms=self.first_attempt_ms or int(time.time() * 1000),
            last_error=str(error)[:MAX_ERROR_LENGTH],
            last_error_type=type(error).__name__,
        )

    def exhausted(self, max_retries: int) -> bool:
        return self.count >= max_retries


# ─────────────────────────────────────────────────────
# Non-retryable failures
# ─────────────────────────────────────────────────────

# Data and programming errors that fail the same way on every redelivery
_DEFAULT_NON_RETRYABLE: tuple[type[Exception], ...] = (
    MessageSerializationError,
    ValidationError,
    ValueError,
    TypeError,
    KeyError,
    NotImplementedError,
)

_custom_non_retryable: set[type[Exception]] = set()
_lock = threading.Lock()


def register_non_retryable(*exception_classes: type[Exception]) -> None:
    """Mark handler exceptions that should be dead-lettered immediately.

    Example:
        register_non_retryable(UnknownMerchantError)
    """
    with _lock:
        _custom_non_retryable.update(exception_classes)


def unregister_non_retryable(*exception_classes: type[Exception]) -> None:
    with _lock:
        _custom_non_retryable.difference_update(exception_classes)


def is_non_retryable_exception(exception: Exception) -> bool:
    if isinstance(exception, _DEFAULT_NON_RETRYABLE):
        return True
    with _lock:
        custom = tuple(_custom_non_retryable)
    return bool(custom) and isinstance(exception, custom)


def _safe_int(value: Any, default: int = 0) -> int:
    if value is None:
        return default
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    try:
        return int(value)
    except (ValueError, TypeError):
        return default


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


__all__ = [
    "RETRY_COUNT_HEADER",
    "RETRY_FIRST_ATTEMPT_HEADER",
    "RETRY_LAST_ERROR_HEADER",
    "RETRY_LAST_ERROR_TYPE_HEADER",
    "RetryState",
    "is_non_retryable_exception",
    "register_non_retryable",
    "unregister_non_retryable",
]
