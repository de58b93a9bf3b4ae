"""Перевод гражданского времени в таймзоне в абсолютный момент.

Все обращения к правилам IANA собраны здесь: остальной код работает
с датами без таймзоны до финального шага resolve().

Переходы DST:
- пропущенное время (весенний перевод, напр. 02:30 в America/New_York):
  читается со смещением до перехода (fold=0), т.е. момент сдвигается
  вперёд на длину разрыва (02:30 -> 03:30 EDT);
- неоднозначное время (осенний перевод, 01:30 встречается дважды):
  берётся первое вхождение, смещение до перехода (fold=0, 01:30 EDT).
"""

from __future__ import annotations

from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from rebalance_scheduler.core.errors import SchedulingError
from rebalance_scheduler.core.types import TimeOfDay


def load_zone(name: str) -> ZoneInfo:
    """Загрузить IANA-таймзону или поднять SchedulingError(invalid_timezone)."""
    if not name or not isinstance(name, str):
        raise SchedulingError.invalid_timezone(str(name))
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise SchedulingError.invalid_timezone(name) from e


def resolve(day: date, at: TimeOfDay | time, zone: str | ZoneInfo) -> datetime:
    """Гражданские дата+время в зоне -> абсолютный момент в UTC."""
    tz = zone if isinstance(zone, ZoneInfo) else load_zone(zone)
    wall = at if isinstance(at, time) else time(at.hour, at.minute)
    # fold=0: для разрыва смещение до перехода, для повтора первое вхождение
    local = datetime.combine(day, wall).replace(tzinfo=tz, fold=0)
    return local.astimezone(timezone.utc)


def to_civil(instant: datetime, zone: str | ZoneInfo) -> datetime:
    """Абсолютный момент -> локальное время в зоне расписания."""
    tz = zone if isinstance(zone, ZoneInfo) else load_zone(zone)
    return instant.astimezone(tz)


def utc_offset_label(zone: str | ZoneInfo, at: datetime) -> str:
    """Смещение зоны в момент `at` в виде "+05:30" / "-04:00"."""
    offset = to_civil(at, zone).utcoffset()
    total_minutes = int(offset.total_seconds() // 60) if offset else 0
    sign = "-" if total_minutes < 0 else "+"
    hours, minutes = divmod(abs(total_minutes), 60)
    return f"{sign}{hours:02d}:{minutes:02d}"
