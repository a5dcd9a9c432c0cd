"""Schedule specs and next-run computation.

A job's schedule spec is either
- a 5-field crontab expression (``"0 3 * * *"``), or
- an interval phrase (``"1 hour"``, ``"15 minutes"``, ``"every 30 seconds"``).

``None`` means a one-off job. Specs are parsed into APScheduler triggers,
which compute the next fire time.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from apscheduler.triggers.cron import CronTrigger  # type: ignore[import-untyped]
from apscheduler.triggers.interval import IntervalTrigger  # type: ignore[import-untyped]

from ticketing_reliability.core.exceptions import InvalidScheduleError

if TYPE_CHECKING:
    from datetime import datetime

    from apscheduler.triggers.base import BaseTrigger  # type: ignore[import-untyped]

_INTERVAL_RE = re.compile(
    r"^(?:every\s+)?(?P<value>\d+(?:\.\d+)?)\s*(?P<unit>second|minute|hour|day|week)s?$",
    re.IGNORECASE,
)


def parse_schedule(spec: str) -> BaseTrigger:
    """Turn a schedule spec into an APScheduler trigger.

    Raises:
        InvalidScheduleError: If the spec is neither an interval phrase nor a
            valid crontab expression.

    Example:
        >>> parse_schedule("15 minutes").interval.total_seconds()
        900.0
    """
    text = " ".join(spec.split())
    if not text:
        raise InvalidScheduleError(spec)

    match = _INTERVAL_RE.match(text)
    if match:
        value = float(match.group("value"))
        if value <= 0:
            raise InvalidScheduleError(spec)
        unit = match.group("unit").lower() + "s"
        return IntervalTrigger(timezone="UTC", **{unit: value})

    if len(text.split(" ")) == 5:
        try:
            return CronTrigger.from_crontab(text, timezone="UTC")
        except ValueError as e:
            raise InvalidScheduleError(spec) from e

    raise InvalidScheduleError(spec)


def validate_schedule(spec: str | None) -> None:
    if spec is not None:
        parse_schedule(spec)


def next_run_after(spec: str | None, after: datetime) -> datetime | None:
    """First fire time strictly after ``after``; None for one-off jobs.

    Example:
        >>> next_run_after("1 hour", datetime(2025, 1, 1, 12, tzinfo=UTC))
        datetime.datetime(2025, 1, 1, 13, 0, tzinfo=...)
    """
    if spec is None:
        return None
    trigger = parse_schedule(spec)
    # Passing ``after`` as the previous fire time anchors intervals on it
    return trigger.get_next_fire_time(after, after)


__all__ = ["next_run_after", "parse_schedule", "validate_schedule"]
