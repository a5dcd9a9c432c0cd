"""Helper functions for recording reliability metrics.

Keeps label handling in one place so call sites stay one-liners.
"""

from __future__ import annotations

from ticketing_reliability.infra.metrics import prometheus


def track_outbox_transition(status: str) -> None:
    """Track an outbox message entering ``status``.

    Example:
            track_outbox_transition("sent")
    """
    prometheus.outbox_messages_total.labels(status=status).inc()


def track_sweep() -> None:
    """Track one retry sweeper run."""
    prometheus.outbox_sweeps_total.inc()


def track_publish(exchange: str, result: str, duration: float | None = None) -> None:
    """Track a broker publish attempt.

    Args:
        exchange: Target exchange name
        result: "confirmed", "nack", "timeout", "error" or "serialization_error"
        duration: Seconds spent waiting for the confirm, if known
    """
    prometheus.broker_publish_total.labels(exchange=exchange, result=result).inc()
    if duration is not None:
        prometheus.broker_publish_confirm_seconds.labels(exchange=exchange).observe(duration)


def track_reconnect(result: str) -> None:
    """Track a reconnect attempt ("success" or "failure")."""
    prometheus.broker_reconnects_total.labels(result=result).inc()


def track_consumed(queue: str, result: str) -> None:
    """Track a consumed message ("ack", "requeue", "dead_letter")."""
    prometheus.broker_consumed_total.labels(queue=queue, result=result).inc()


def track_job_run(job: str, result: str, duration: float) -> None:
    """Track a finished scheduled job run."""
    prometheus.scheduled_job_runs_total.labels(job=job, result=result).inc()
    prometheus.scheduled_job_duration_seconds.labels(job=job).observe(duration)


def track_lease_conflict(job: str, phase: str) -> None:
    """Track a lost claim ("claim") or a release after takeover ("release")."""
    prometheus.scheduled_job_lease_conflicts_total.labels(job=job, phase=phase).inc()


def track_retry_attempt(operation: str, attempt_number: int) -> None:
    """Track a retry attempt.

    Args:
        operation: Name of the operation being retried
        attempt_number: Current attempt number (1-indexed)
    """
    prometheus.retry_attempts_total.labels(
        operation=operation,
        attempt_number=str(attempt_number),
    ).inc()


def track_retry_exhausted(operation: str) -> None:
    """Track when all retry attempts are exhausted."""
    prometheus.retry_exhausted_total.labels(operation=operation).inc()


def track_retry_success(operation: str, attempts_needed: int) -> None:
    """Track successful operation after retries."""
    prometheus.retry_success_after_failure_total.labels(
        operation=operation,
        attempts_needed=str(attempts_needed),
    ).inc()
