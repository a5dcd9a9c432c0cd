from __future__ import annotations

from ticketing_reliability.utils.retry.decorator import retry
from ticketing_reliability.utils.retry.exceptions import RetryError, RetryStatistics
from ticketing_reliability.utils.retry.strategies import RetryStrategy

__all__ = ["RetryError", "RetryStatistics", "RetryStrategy", "retry"]
