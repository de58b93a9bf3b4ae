"""Rebalance Scheduler: расчёт следующего запуска расписаний ребалансировки."""

from rebalance_scheduler.clock.trusted import FixedTimeSource, TrustedTimeSource
from rebalance_scheduler.core.errors import SchedulingError
from rebalance_scheduler.core.types import (
    IntervalUnit,
    NextRunResult,
    Schedule,
    TimeOfDay,
    TrustedInstant,
)
from rebalance_scheduler.scheduler.engine import compute_next_run, next_n_runs

__version__ = "0.1.0"

__all__ = [
    "compute_next_run",
    "next_n_runs",
    "Schedule",
    "TimeOfDay",
    "IntervalUnit",
    "NextRunResult",
    "SchedulingError",
    "TrustedInstant",
    "TrustedTimeSource",
    "FixedTimeSource",
]
