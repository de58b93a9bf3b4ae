"""Базовые типы данных планировщика ребалансировки."""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from rebalance_scheduler.core.errors import SchedulingError, SchedulingErrorKind

_TIME_PATTERN = re.compile(
    r"^\s*(\d{1,2}):(\d{2})(?::(\d{2}))?\s*([AaPp][Mm])?\s*$"
)


class IntervalUnit(str, Enum):
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"


class TimeOfDay(BaseModel):
    """Локальное время суток, в которое срабатывает расписание."""
    model_config = ConfigDict(frozen=True)

    hour: int = Field(ge=0, le=23)
    minute: int = Field(default=0, ge=0, le=59)

    @classmethod
    def parse(cls, value: str) -> TimeOfDay:
        """Разобрать "HH:MM", "HH:MM:SS" (колонка time) или "h:mm AM/PM" (форма UI)."""
        match = _TIME_PATTERN.match(value)
        if not match:
            raise ValueError(f"Ожидается формат HH:MM, получено {value!r}")
        hour, minute = int(match.group(1)), int(match.group(2))
        period = match.group(4)
        if period:
            if not 1 <= hour <= 12:
                raise ValueError(f"Час вне диапазона 1..12: {value!r}")
            period = period.upper()
            if period == "PM" and hour != 12:
                hour += 12
            elif period == "AM" and hour == 12:
                hour = 0
        return cls(hour=hour, minute=minute)

    def __str__(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"


class Schedule(BaseModel):
    """Неизменяемое описание повторяющегося расписания.

    Собирается заново из сохранённой записи при каждом вызове калькулятора.
    `days_of_week` учитывается только для недельных расписаний (0 = воскресенье),
    `days_of_month` только для месячных.
    """
    model_config = ConfigDict(frozen=True)

    interval_value: int = Field(default=1, ge=1)
    interval_unit: IntervalUnit
    days_of_week: frozenset[int] = Field(default_factory=frozenset)
    days_of_month: frozenset[int] = Field(default_factory=frozenset)
    time_of_day: TimeOfDay
    timezone: str = "America/New_York"
    last_executed_at: datetime | None = None
    enabled: bool = True

    @field_validator("time_of_day", mode="before")
    @classmethod
    def _parse_time_of_day(cls, value: object) -> object:
        if isinstance(value, str):
            return TimeOfDay.parse(value)
        return value

    @field_validator("days_of_week")
    @classmethod
    def _check_days_of_week(cls, value: frozenset[int]) -> frozenset[int]:
        bad = sorted(d for d in value if not 0 <= d <= 6)
        if bad:
            raise ValueError(f"Дни недели должны быть в диапазоне 0..6: {bad}")
        return value

    @field_validator("days_of_month")
    @classmethod
    def _check_days_of_month(cls, value: frozenset[int]) -> frozenset[int]:
        bad = sorted(d for d in value if not 1 <= d <= 31)
        if bad:
            raise ValueError(f"Дни месяца должны быть в диапазоне 1..31: {bad}")
        return value

    @field_validator("last_executed_at")
    @classmethod
    def _check_aware(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.utcoffset() is None:
            raise ValueError("last_executed_at должен содержать таймзону")
        return value

    def with_last_executed(self, instant: datetime) -> Schedule:
        return self.model_copy(update={"last_executed_at": instant})


NextRunStatus = Literal["scheduled", "paused", "error"]


class NextRunResult(BaseModel):
    """Результат расчёта следующего запуска: время, пауза или ошибка."""
    model_config = ConfigDict(frozen=True)

    status: NextRunStatus
    next_run_at: datetime | None = None
    error_kind: SchedulingErrorKind | None = None
    detail: str | None = None

    @model_validator(mode="after")
    def _error_has_kind(self) -> NextRunResult:
        if self.status == "error" and self.error_kind is None:
            raise ValueError("Для status=\"error\" нужен error_kind")
        return self

    @classmethod
    def scheduled(cls, at: datetime) -> NextRunResult:
        return cls(status="scheduled", next_run_at=at)

    @classmethod
    def paused(cls) -> NextRunResult:
        return cls(status="paused", detail="Расписание на паузе")

    @classmethod
    def failed(cls, error: SchedulingError) -> NextRunResult:
        return cls(status="error", error_kind=error.kind, detail=str(error))

    @property
    def is_scheduled(self) -> bool:
        return self.status == "scheduled"

    @property
    def is_paused(self) -> bool:
        return self.status == "paused"

    @property
    def is_error(self) -> bool:
        return self.status == "error"

    def unwrap(self) -> datetime | None:
        """Время запуска, None для паузы; для ошибки поднимает SchedulingError."""
        if self.status == "error":
            raise SchedulingError(self.error_kind, self.detail or "")
        return self.next_run_at


TimeSourceKind = Literal["trusted", "local", "fixed"]


class TrustedInstant(BaseModel):
    """Опорный момент времени и его происхождение."""
    model_config = ConfigDict(frozen=True)

    instant: datetime
    source: TimeSourceKind
    approximate: bool = False
