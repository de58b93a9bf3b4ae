"""Превью следующего запуска для UI.

Использует тот же compute_next_run, что и триггер, поэтому показанное
время совпадает с фактическим запуском.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from rebalance_scheduler.clock.trusted import TimeSource
from rebalance_scheduler.core.errors import SchedulingError
from rebalance_scheduler.core.types import IntervalUnit, NextRunResult, Schedule, TrustedInstant
from rebalance_scheduler.scheduler.civil_time import to_civil, utc_offset_label
from rebalance_scheduler.scheduler.engine import compute_next_run, next_n_runs

WEEKDAY_NAMES = ("Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat")
APPROXIMATE_NOTE = "Using local clock, may be approximate"

_UNIT_NAMES = {
    IntervalUnit.DAYS: ("day", "days"),
    IntervalUnit.WEEKS: ("week", "weeks"),
    IntervalUnit.MONTHS: ("month", "months"),
}


class SchedulePreview(BaseModel):
    description: str
    result: NextRunResult
    text: str
    upcoming: list[datetime] = Field(default_factory=list)
    reference: TrustedInstant
    clock_note: str | None = None


def describe_schedule(schedule: Schedule) -> str:
    """Человекочитаемое описание: "Every 2 weeks on Mon, Wed at 09:00 (America/New_York)"."""
    singular, plural = _UNIT_NAMES[schedule.interval_unit]
    if schedule.interval_value == 1:
        text = f"Every {singular}"
    else:
        text = f"Every {schedule.interval_value} {plural}"

    if schedule.interval_unit == IntervalUnit.WEEKS and schedule.days_of_week:
        text += " on " + ", ".join(WEEKDAY_NAMES[d] for d in sorted(schedule.days_of_week))
    elif schedule.interval_unit == IntervalUnit.MONTHS and schedule.days_of_month:
        days = ", ".join(str(d) for d in sorted(schedule.days_of_month))
        text += f" on day {days}"

    text += f" at {schedule.time_of_day} ({schedule.timezone})"
    if not schedule.enabled:
        text += " [paused]"
    return text


def format_instant(instant: datetime, zone: str) -> str:
    local = to_civil(instant, zone)
    return (
        f"{local:%A}, {local:%B} {local.day}, {local.year} at {local:%H:%M} "
        f"{local.tzname()} (UTC{utc_offset_label(zone, instant)})"
    )


def format_next_run(result: NextRunResult, zone: str) -> str:
    if result.is_paused:
        return "Paused"
    if result.is_error or result.next_run_at is None:
        return f"Error: {result.detail or result.error_kind}"
    return format_instant(result.next_run_at, zone)


def preview(schedule: Schedule, reference: TrustedInstant, count: int = 1) -> SchedulePreview:
    result = compute_next_run(schedule, reference.instant)
    upcoming: list[datetime] = []
    if result.is_scheduled and count > 1:
        try:
            upcoming = next_n_runs(schedule, reference.instant, count)
        except SchedulingError:
            upcoming = []
    return SchedulePreview(
        description=describe_schedule(schedule),
        result=result,
        text=format_next_run(result, schedule.timezone),
        upcoming=upcoming,
        reference=reference,
        clock_note=APPROXIMATE_NOTE if reference.approximate else None,
    )


async def preview_now(schedule: Schedule, time_source: TimeSource, count: int = 1) -> SchedulePreview:
    """Превью относительно доверенного времени, а не часов клиента."""
    return preview(schedule, await time_source.now(), count=count)
