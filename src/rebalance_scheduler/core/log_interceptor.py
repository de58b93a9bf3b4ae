from __future__ import annotations

import logging
import traceback
from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rebalance_scheduler.core.action_journal import ActionJournal

_JOURNAL_LOGGERS = (
    "rebalance_scheduler.core.action_journal",
    "rebalance_scheduler.core.log_interceptor",
)
_NOISY_LIBRARIES = ("httpx", "aiosqlite")


class LogInterceptor(logging.Handler):
    """Перехватчик WARNING+ логов планировщика в ActionJournal.

    Если запись сделана с extra={"schedule_id": ...}, событие привязывается
    к расписанию и попадает в ActionJournal.get_for_schedule().
    """

    def __init__(self, journal: ActionJournal, ignore: tuple[str, ...] = _NOISY_LIBRARIES):
        super().__init__(level=logging.WARNING)
        self._journal = journal
        self._ignore = _JOURNAL_LOGGERS + tuple(ignore)

    def emit(self, record: logging.LogRecord) -> None:
        if record.name.startswith(self._ignore):
            return
        try:
            from rebalance_scheduler.core.action_journal import JournalEntry

            schedule_id = getattr(record, "schedule_id", None)
            self._journal.record(
                JournalEntry(
                    timestamp=datetime.fromtimestamp(record.created),
                    event_type="error" if record.levelno >= logging.ERROR else "warning",
                    summary=record.getMessage(),
                    details=_format_exc(record),
                    schedule_id=schedule_id if isinstance(schedule_id, int) else None,
                )
            )
        except Exception:
            self.handleError(record)


def _format_exc(record: logging.LogRecord) -> str | None:
    if not record.exc_info:
        return None
    return "".join(traceback.format_exception(*record.exc_info))
