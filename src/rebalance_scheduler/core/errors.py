"""Типизированные ошибки расчёта расписаний."""

from __future__ import annotations

from typing import Literal

SchedulingErrorKind = Literal["invalid_timezone", "no_qualifying_date", "unresolvable", "invalid_record"]


class SchedulingError(Exception):
    """Ошибка вычисления следующего запуска.

    `kind` позволяет вызывающему коду (UI, триггер) различать
    ошибки конфигурации без разбора текста сообщения.
    """

    kind: SchedulingErrorKind

    def __init__(self, kind: SchedulingErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind

    @classmethod
    def invalid_timezone(cls, zone: str) -> SchedulingError:
        return cls("invalid_timezone", f"Неизвестная таймзона: {zone!r}")

    @classmethod
    def no_qualifying_date(cls, message: str) -> SchedulingError:
        return cls("no_qualifying_date", message)

    @classmethod
    def invalid_record(cls, message: str) -> SchedulingError:
        """Сохранённая запись не проходит валидацию Schedule."""
        return cls("invalid_record", message)

    @classmethod
    def unresolvable(cls, iterations: int) -> SchedulingError:
        return cls(
            "unresolvable",
            f"Не удалось найти будущий запуск за {iterations} итераций",
        )
