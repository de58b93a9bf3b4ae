"""Проверка дат по ограничениям дней недели / дней месяца."""

from __future__ import annotations

from datetime import date, timedelta

from rebalance_scheduler.core.errors import SchedulingError
from rebalance_scheduler.core.types import IntervalUnit, Schedule

WEEKLY_HORIZON = timedelta(days=14)
# Месячный цикл с запасом: от 1 февраля до 31 марта 59 дней
MONTHLY_HORIZON = timedelta(days=62)
UNCONSTRAINED_HORIZON = timedelta(days=1)


def weekday_index(day: date) -> int:
    """Номер дня недели в формате дашборда: 0 = воскресенье ... 6 = суббота."""
    return (day.weekday() + 1) % 7


def has_active_constraint(schedule: Schedule) -> bool:
    if schedule.interval_unit == IntervalUnit.WEEKS:
        return bool(schedule.days_of_week)
    if schedule.interval_unit == IntervalUnit.MONTHS:
        return bool(schedule.days_of_month)
    return False


def qualifies(day: date, schedule: Schedule) -> bool:
    """Подходит ли гражданская дата (уже в зоне расписания) под ограничения.

    Число месяца, которого нет в данном месяце (31 февраля), не переносится
    на соседний день: такой месяц просто пропускается.
    """
    if schedule.interval_unit == IntervalUnit.WEEKS and schedule.days_of_week:
        return weekday_index(day) in schedule.days_of_week
    if schedule.interval_unit == IntervalUnit.MONTHS and schedule.days_of_month:
        return day.day in schedule.days_of_month
    return True


def default_horizon(schedule: Schedule) -> timedelta:
    if not has_active_constraint(schedule):
        return UNCONSTRAINED_HORIZON
    if schedule.interval_unit == IntervalUnit.WEEKS:
        return WEEKLY_HORIZON
    return MONTHLY_HORIZON


def next_qualifying(
    day: date,
    schedule: Schedule,
    search_horizon: timedelta | None = None,
) -> date:
    """Первая подходящая дата начиная с `day` включительно."""
    horizon = search_horizon if search_horizon is not None else default_horizon(schedule)
    for offset in range(max(horizon.days, 1)):
        candidate = day + timedelta(days=offset)
        if qualifies(candidate, schedule):
            return candidate
    raise SchedulingError.no_qualifying_date(
        f"Нет подходящей даты в пределах {horizon.days} дн. начиная с {day.isoformat()}"
    )
