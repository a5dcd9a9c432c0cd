"""Prometheus metrics for the outbox, broker and scheduler."""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Histogram

# Create custom registry for better control
REGISTRY = CollectorRegistry()

# Covers broker confirm round-trips from 1ms to 10s
PUBLISH_LATENCY_BUCKETS = (
    0.001,
    0.005,
    0.01,
    0.025,
    0.05,
    0.1,
    0.25,
    0.5,
    1.0,
    2.5,
    5.0,
    10.0,
)

# Scheduled jobs run from sub-second sweeps to multi-minute cleanups
JOB_DURATION_BUCKETS = (0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0)

# Outbox metrics
outbox_messages_total = Counter(
    "outbox_messages_total",
    "Outbox message status transitions",
    ["status"],
    registry=REGISTRY,
)

outbox_sweeps_total = Counter(
    "outbox_sweeps_total",
    "Retry sweeper runs",
    registry=REGISTRY,
)

# Broker metrics
broker_publish_total = Counter(
    "broker_publish_total",
    "Broker publish attempts by result",
    ["exchange", "result"],
    registry=REGISTRY,
)

broker_publish_confirm_seconds = Histogram(
    "broker_publish_confirm_seconds",
    "Time from publish to publisher confirm",
    ["exchange"],
    buckets=PUBLISH_LATENCY_BUCKETS,
    registry=REGISTRY,
)

broker_reconnects_total = Counter(
    "broker_reconnects_total",
    "Broker reconnect attempts by result",
    ["result"],
    registry=REGISTRY,
)

broker_consumed_total = Counter(
    "broker_consumed_total",
    "Consumed messages by outcome",
    ["queue", "result"],
    registry=REGISTRY,
)

# Scheduler metrics
scheduled_job_runs_total = Counter(
    "scheduled_job_runs_total",
    "Scheduled job executions by result",
    ["job", "result"],
    registry=REGISTRY,
)

scheduled_job_duration_seconds = Histogram(
    "scheduled_job_duration_seconds",
    "Scheduled job execution time",
    ["job"],
    buckets=JOB_DURATION_BUCKETS,
    registry=REGISTRY,
)

scheduled_job_lease_conflicts_total = Counter(
    "scheduled_job_lease_conflicts_total",
    "Claims lost to another worker or released after the lease was taken over",
    ["job", "phase"],
    registry=REGISTRY,
)

# Retry utility metrics
retry_attempts_total = Counter(
    "retry_attempts_total",
    "Retry attempts by operation",
    ["operation", "attempt_number"],
    registry=REGISTRY,
)

retry_exhausted_total = Counter(
    "retry_exhausted_total",
    "Operations that exhausted every retry attempt",
    ["operation"],
    registry=REGISTRY,
)

retry_success_after_failure_total = Counter(
    "retry_success_after_failure_total",
    "Operations that succeeded after at least one retry",
    ["operation", "attempts_needed"],
    registry=REGISTRY,
)
