"""Custom exception classes for the reliability layer."""

from __future__ import annotations

from typing import Any


class ReliabilityError(Exception):
    """Base exception for the outbox, broker and scheduler components.

    All custom exceptions should inherit from this class.

    Attributes:
        detail: Human-readable error message.
        type: Error type identifier (stable, machine-readable).
        extra: Additional context-specific information about the error.

    Example:
            raise ReliabilityError(
            detail="Outbox row could not be written",
            type="outbox-write-failed",
            extra={"message_id": "9b1c..."},
        )
    """

    retryable: bool = False

    def __init__(
        self,
        detail: str,
        type: str = "reliability-error",
        extra: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            detail: Human-readable error message.
            type: Error type identifier.
            extra: Additional context about the error.
        """
        self.detail = detail
        self.type = type
        self.extra = extra or {}
        super().__init__(detail)


class PersistenceError(ReliabilityError):
    """Raised when the outbox or job tables cannot be read or written."""

    def __init__(self, detail: str, extra: dict[str, Any] | None = None) -> None:
        super().__init__(detail=detail, type="persistence-error", extra=extra)


# ──────────────────────────────────────────────────────────────────────────────
# Broker errors
# ──────────────────────────────────────────────────────────────────────────────


class BrokerError(ReliabilityError):
    """Base class for message broker failures."""

    retryable = True


class BrokerConnectionError(BrokerError):
    """Raised when the broker connection or channel is unavailable."""

    def __init__(self, detail: str = "Broker connection unavailable", extra: dict[str, Any] | None = None) -> None:
        super().__init__(detail=detail, type="broker-unavailable", extra=extra)


class PublishError(BrokerError):
    """Raised when a publish was not confirmed by the broker.

    The message may or may not have reached the broker; callers must treat
    it as undelivered and leave it for a retry.
    """

    def __init__(
        self,
        detail: str = "Publish failed",
        type: str = "publish-failed",
        extra: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(detail=detail, type=type, extra=extra)


class PublishTimeoutError(PublishError):
    """Raised when the publisher confirm does not arrive in time."""

    def __init__(self, timeout: float, extra: dict[str, Any] | None = None) -> None:
        self.timeout = timeout
        super().__init__(
            detail=f"Publisher confirm not received within {timeout:.1f}s",
            type="publish-timeout",
            extra=extra,
        )


class PublishNackError(PublishError):
    """Raised when the broker negatively acknowledges or returns a message."""

    def __init__(self, detail: str = "Broker rejected the message", extra: dict[str, Any] | None = None) -> None:
        super().__init__(detail=detail, type="publish-nack", extra=extra)


class MessageSerializationError(ReliabilityError):
    """Raised when a payload cannot be encoded into a message envelope.

    Terminal: retrying the same payload can never succeed.
    """

    def __init__(self, detail: str, extra: dict[str, Any] | None = None) -> None:
        super().__init__(detail=detail, type="message-serialization", extra=extra)


# ──────────────────────────────────────────────────────────────────────────────
# Outbox errors
# ──────────────────────────────────────────────────────────────────────────────


class OutboxPublishError(ReliabilityError):
    """Raised to the caller when immediate delivery of an outbox message fails.

    The outbox record is kept (status ``failed`` or ``dead``) so the retry
    sweeper can re-drive it; the identifiers let the caller correlate the
    eventual outcome.
    """

    def __init__(
        self,
        message_id: str,
        correlation_id: str,
        cause: Exception,
        *,
        terminal: bool = False,
    ) -> None:
        self.message_id = message_id
        self.correlation_id = correlation_id
        self.cause = cause
        self.terminal = terminal
        self.retryable = not terminal
        super().__init__(
            detail=str(cause) or type(cause).__name__,
            type="outbox-publish-failed",
            extra={"message_id": message_id, "correlation_id": correlation_id},
        )


# ──────────────────────────────────────────────────────────────────────────────
# Scheduler errors
# ──────────────────────────────────────────────────────────────────────────────


class JobNotRegisteredError(ReliabilityError):
    """Raised when a job name has no descriptor in the registry."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(detail=f"Job {name!r} is not registered", type="job-not-registered")


class InvalidScheduleError(ReliabilityError):
    """Raised when a schedule spec cannot be parsed."""

    def __init__(self, spec: str) -> None:
        self.spec = spec
        super().__init__(detail=f"Invalid schedule spec: {spec!r}", type="invalid-schedule")


class LeaseLostError(ReliabilityError):
    """Raised when a worker finds its job lease was taken over or cleared."""

    def __init__(self, name: str, owner: str, token: int) -> None:
        self.name = name
        self.owner = owner
        self.token = token
        super().__init__(
            detail=f"Lease on job {name!r} (token {token}) is no longer held by {owner}",
            type="lease-lost",
            extra={"job": name, "owner": owner, "token": token},
        )


__all__ = [
    "BrokerConnectionError",
    "BrokerError",
    "InvalidScheduleError",
    "JobNotRegisteredError",
    "LeaseLostError",
    "MessageSerializationError",
    "OutboxPublishError",
    "PersistenceError",
    "PublishError",
    "PublishNackError",
    "PublishTimeoutError",
    "ReliabilityError",
]
