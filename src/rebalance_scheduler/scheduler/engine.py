"""Вычисление следующего запуска расписания ребалансировки.

Единственная реализация расчёта: её вызывают и триггер исполнения
(scheduler/loop.py), и превью в UI (scheduler/preview.py), поэтому
они всегда совпадают на одних и тех же входных данных.

Функция чистая: опорный момент `now` передаётся явно (его даёт
clock.trusted.TrustedTimeSource), собственного состояния нет.
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import date, datetime, timedelta
from itertools import islice

from rebalance_scheduler.core.errors import SchedulingError
from rebalance_scheduler.core.types import IntervalUnit, NextRunResult, Schedule
from rebalance_scheduler.scheduler.civil_time import load_zone, resolve, to_civil
from rebalance_scheduler.scheduler.matcher import has_active_constraint, next_qualifying, qualifies
from rebalance_scheduler.scheduler.stepper import period_end, period_start, step

# Предел итераций догоняющего цикла. Пропуски по несколько лет покрываются
# перемоткой в _interval_dates и пропуском прошедших периодов в _advance.
MAX_ITERATIONS = 1000


def compute_next_run(schedule: Schedule, now: datetime) -> NextRunResult:
    """Следующий момент запуска строго позже `now`.

    Выключенное расписание даёт status="paused" (не ошибка). Ошибки
    конфигурации возвращаются как status="error" с error_kind, исключения
    наружу не выходят.
    """
    if now.utcoffset() is None:
        raise ValueError("now должен содержать таймзону")
    if not schedule.enabled:
        return NextRunResult.paused()
    try:
        return NextRunResult.scheduled(_find_next_run(schedule, now))
    except SchedulingError as e:
        return NextRunResult.failed(e)


def next_n_runs(schedule: Schedule, now: datetime, n: int) -> list[datetime]:
    """Ближайшие `n` запусков, как если бы каждый из них был выполнен вовремя.

    Пустой список для паузы; ошибка конфигурации поднимает SchedulingError.
    """
    runs: list[datetime] = []
    current, reference = schedule, now
    for _ in range(n):
        at = compute_next_run(current, reference).unwrap()
        if at is None:
            break
        runs.append(at)
        current, reference = current.with_last_executed(at), at
    return runs


def _find_next_run(schedule: Schedule, now: datetime) -> datetime:
    tz = load_zone(schedule.timezone)
    today = to_civil(now, tz).date()

    fired = schedule.last_executed_at is not None
    anchor = to_civil(schedule.last_executed_at, tz).date() if fired else today

    if has_active_constraint(schedule):
        dates = _constrained_dates(schedule, anchor, fired, today)
    else:
        dates = _interval_dates(schedule, anchor, fired, today)

    for day in islice(dates, MAX_ITERATIONS):
        candidate = resolve(day, schedule.time_of_day, tz)
        if candidate > now:
            return candidate
    raise SchedulingError.unresolvable(MAX_ITERATIONS)


def _interval_dates(schedule: Schedule, anchor: date, fired: bool, today: date) -> Iterator[date]:
    """Даты anchor + k*N единиц.

    Каждая дата считается от anchor, а не от предыдущей, чтобы прижатие
    31 -> 28 в феврале не сдвигало последующие месяцы.
    """
    unit, value = schedule.interval_unit, schedule.interval_value
    k = max(1 if fired else 0, _steps_behind(anchor, today, unit, value))
    while True:
        yield step(anchor, unit, value * k)
        k += 1


def _steps_behind(anchor: date, today: date, unit: IntervalUnit, value: int) -> int:
    """Число шагов, которые заведомо лежат раньше вчерашнего дня."""
    if unit == IntervalUnit.MONTHS:
        gap = (today.year * 12 + today.month) - (anchor.year * 12 + anchor.month) - 2
        span = value
    else:
        gap = (today - anchor).days - 2
        span = value * (7 if unit == IntervalUnit.WEEKS else 1)
    return gap // span if gap > 0 else 0


def _constrained_dates(schedule: Schedule, anchor: date, fired: bool, today: date) -> Iterator[date]:
    day = _advance(anchor, schedule, today) if fired else next_qualifying(anchor, schedule)
    while True:
        yield day
        day = _advance(day, schedule, today)


def _advance(day: date, schedule: Schedule, today: date) -> date:
    """Следующая дата после `day` для недель/месяцев с выбранными днями.

    Сначала оставшиеся дни того же периода (неделя с воскресенья или месяц),
    затем начало периода сдвигается на interval_value и ищется первый
    подходящий день. Периоды, целиком лежащие в прошлом, пропускаются
    одним шагом, кратным interval_value, так что фаза не сбивается.
    """
    unit, value = schedule.interval_unit, schedule.interval_value
    end = period_end(day, unit)
    if end >= today - timedelta(days=1):
        following = day + timedelta(days=1)
        while following <= end:
            if qualifies(following, schedule):
                return following
            following += timedelta(days=1)
    start = step(period_start(day, unit), unit, value)
    start = step(start, unit, value * _steps_behind(start, today, unit, value))
    return next_qualifying(start, schedule)
