"""Lease-locked scheduled jobs."""

from ticketing_reliability.infra.tasks.scheduler import JobRunResult, JobScheduler

__all__ = ["JobRunResult", "JobScheduler"]
