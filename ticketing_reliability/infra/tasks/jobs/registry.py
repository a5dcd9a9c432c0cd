"""Static job table.

Jobs are declared as data at startup, never discovered at runtime:

    registry = JobRegistry(
        [
            JobDescriptor("outbox-retry-sweeper", "1 minute", sweeper.sweep),
            JobDescriptor("outbox-cleanup", "0 3 * * *", sweeper.cleanup),
        ]
    )
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable, Iterator
from typing import Any, NamedTuple

from ticketing_reliability.core.exceptions import JobNotRegisteredError
from ticketing_reliability.infra.tasks.jobs.schedule import validate_schedule

JobHandler = Callable[[], Awaitable[Any]]


class JobDescriptor(NamedTuple):
    """A named job, its schedule spec (None = one-off) and its handler."""

    name: str
    schedule_spec: str | None
    handler: JobHandler
    description: str = ""


class JobRegistry:
    def __init__(self, descriptors: Iterable[JobDescriptor] = ()) -> None:
        self._jobs: dict[str, JobDescriptor] = {}
        for descriptor in descriptors:
            self.register(descriptor)

    def register(self, descriptor: JobDescriptor) -> None:
        """Add a job.

        Raises:
            ValueError: If the name is already taken.
            InvalidScheduleError: If the schedule spec cannot be parsed.
        """
        if descriptor.name in self._jobs:
            msg = f"Job {descriptor.name!r} is already registered"
            raise ValueError(msg)
        validate_schedule(descriptor.schedule_spec)
        self._jobs[descriptor.name] = descriptor

    def get(self, name: str) -> JobDescriptor:
        try:
            return self._jobs[name]
        except KeyError:
            raise JobNotRegisteredError(name) from None

    def names(self) -> list[str]:
        return list(self._jobs)

    def __contains__(self, name: object) -> bool:
        return name in self._jobs

    def __iter__(self) -> Iterator[JobDescriptor]:
        return iter(self._jobs.values())

    def __len__(self) -> int:
        return len(self._jobs)


__all__ = ["JobDescriptor", "JobHandler", "JobRegistry"]
