"""Шаг повторения по гражданским датам (без времени суток и таймзоны)."""

from __future__ import annotations

import calendar
from datetime import date, timedelta

from rebalance_scheduler.core.types import IntervalUnit


def step(day: date, unit: IntervalUnit, value: int) -> date:
    """Сдвинуть дату на `value` единиц повторения.

    Месяцы сохраняют число месяца, если оно есть в целевом месяце,
    иначе прижимаются к последнему дню (31 января + 1 месяц = 28/29 февраля).
    """
    if unit == IntervalUnit.DAYS:
        return day + timedelta(days=value)
    if unit == IntervalUnit.WEEKS:
        return day + timedelta(days=7 * value)
    return _add_months(day, value)


def period_start(day: date, unit: IntervalUnit) -> date:
    """Начало периода, в котором лежит дата: неделя с воскресенья или месяц."""
    if unit == IntervalUnit.WEEKS:
        # date.weekday(): понедельник = 0, воскресенье = 6
        return day - timedelta(days=(day.weekday() + 1) % 7)
    if unit == IntervalUnit.MONTHS:
        return day.replace(day=1)
    return day


def period_end(day: date, unit: IntervalUnit) -> date:
    """Последний день периода, в котором лежит дата."""
    if unit == IntervalUnit.WEEKS:
        return period_start(day, unit) + timedelta(days=6)
    if unit == IntervalUnit.MONTHS:
        return day.replace(day=days_in_month(day.year, day.month))
    return day


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def _add_months(day: date, months: int) -> date:
    index = day.year * 12 + (day.month - 1) + months
    year, month = divmod(index, 12)
    month += 1
    return date(year, month, min(day.day, days_in_month(year, month)))
