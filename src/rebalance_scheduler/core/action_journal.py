from __future__ import annotations

import logging
from collections import Counter, deque
from dataclasses import dataclass
from datetime import datetime

logger = logging.getLogger(__name__)

_FAILURE_TYPES = ("rebalance_fail", "misconfigured", "error")


@dataclass
class JournalEntry:
    timestamp: datetime
    event_type: str       # "rebalance_ok", "rebalance_fail", "misconfigured", "skipped", "error", "warning"
    summary: str          # краткое описание
    details: str | None = None       # полные детали (traceback и т.п.)
    schedule_id: int | None = None   # к какому расписанию относится (None = глобальное)


class ActionJournal:
    """Кольцевой буфер событий триггера расписаний."""

    def __init__(self, max_entries: int = 200):
        self._entries: deque[JournalEntry] = deque(maxlen=max_entries)

    def __len__(self) -> int:
        return len(self._entries)

    def record(self, entry: JournalEntry) -> None:
        """Записать новое событие."""
        self._entries.append(entry)
        if entry.event_type in ("rebalance_fail", "misconfigured"):
            logger.warning("Journal record [%s]: %s", entry.event_type, entry.summary)

    def get_recent_errors(self, since: datetime | None = None, limit: int = 10) -> list[JournalEntry]:
        """Получить последние ошибки и предупреждения."""
        errors = [e for e in self._entries if e.event_type in _FAILURE_TYPES + ("warning",)]
        if since:
            errors = [e for e in errors if e.timestamp > since]
        return errors[-limit:]

    def get_for_schedule(self, schedule_id: int, limit: int = 5) -> list[JournalEntry]:
        events = [e for e in self._entries if e.schedule_id == schedule_id]
        return events[-limit:]

    def build_report(self) -> str:
        """Сводка по типам событий для вывода при остановке."""
        counts = Counter(e.event_type for e in self._entries)
        if not counts:
            return "Событий нет."
        lines = ["События планировщика:"]
        for event_type, count in counts.most_common():
            lines.append(f"- {event_type}: {count}")
        for e in self.get_recent_errors(limit=5):
            time_str = e.timestamp.strftime("%Y-%m-%d %H:%M:%S")
            lines.append(f"  [{e.event_type.upper()} {time_str}] {e.summary}")
        return "\n".join(lines)
