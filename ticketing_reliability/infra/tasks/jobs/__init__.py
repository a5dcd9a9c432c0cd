"""Scheduled job table, schedule parsing and lease persistence."""

from ticketing_reliability.infra.tasks.jobs.models import ScheduledJob
from ticketing_reliability.infra.tasks.jobs.registry import JobDescriptor, JobHandler, JobRegistry
from ticketing_reliability.infra.tasks.jobs.repository import JobRepository
from ticketing_reliability.infra.tasks.jobs.schedule import next_run_after, parse_schedule, validate_schedule

__all__ = [
    "JobDescriptor",
    "JobHandler",
    "JobRegistry",
    "JobRepository",
    "ScheduledJob",
    "next_run_after",
    "parse_schedule",
    "validate_schedule",
]
