"""SQLite store расписаний ребалансировки."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from rebalance_scheduler.core.types import IntervalUnit, Schedule, TimeOfDay

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS rebalance_schedules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 1,
    interval_value INTEGER NOT NULL DEFAULT 1 CHECK (interval_value > 0),
    interval_unit TEXT NOT NULL CHECK (interval_unit IN ('days', 'weeks', 'months')),
    day_of_week TEXT NOT NULL DEFAULT '[]',
    day_of_month TEXT NOT NULL DEFAULT '[]',
    time_of_day TEXT NOT NULL,
    timezone TEXT NOT NULL DEFAULT 'America/New_York',
    selected_tickers TEXT NOT NULL DEFAULT '[]',
    last_executed_at TEXT,
    next_scheduled_at TEXT,
    execution_count INTEGER NOT NULL DEFAULT 0,
    last_execution_status TEXT CHECK (
        last_execution_status IS NULL
        OR last_execution_status IN ('pending', 'running', 'completed', 'cancelled', 'error')
    ),
    last_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_rebalance_schedules_enabled
ON rebalance_schedules(enabled, next_scheduled_at);
"""


@dataclass
class ScheduleRecord:
    id: int
    user_id: str
    enabled: bool
    interval_value: int
    interval_unit: str
    day_of_week: list[int]
    day_of_month: list[int]
    time_of_day: str
    timezone: str
    last_executed_at: datetime | None
    next_scheduled_at: datetime | None
    execution_count: int
    last_execution_status: str | None
    last_error: str | None
    created_at: str
    updated_at: str
    selected_tickers: list[str] = field(default_factory=list)

    def to_schedule(self) -> Schedule:
        """Неизменяемое значение для калькулятора; строится заново при каждом вызове."""
        return Schedule(
            interval_value=self.interval_value,
            interval_unit=IntervalUnit(self.interval_unit),
            days_of_week=frozenset(self.day_of_week),
            days_of_month=frozenset(self.day_of_month),
            time_of_day=TimeOfDay.parse(self.time_of_day),
            timezone=self.timezone,
            last_executed_at=self.last_executed_at,
            enabled=self.enabled,
        )


class ScheduleStore:
    """Персистентное хранилище расписаний. Саму математику расписаний не считает."""

    def __init__(self, db_path: Path):
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    async def init(self) -> None:
        async with aiosqlite.connect(self._db_path) as db:
            await db.executescript(_SCHEMA)
            await db.commit()
        logger.info("Schedule DB инициализирована: %s", self._db_path)

    async def create_schedule(
        self,
        *,
        user_id: str,
        schedule: Schedule,
        selected_tickers: list[str] | None = None,
        next_scheduled_at: datetime | None = None,
    ) -> int:
        now = _utc_now_iso()
        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO rebalance_schedules (
                    user_id, enabled, interval_value, interval_unit,
                    day_of_week, day_of_month, time_of_day, timezone,
                    selected_tickers, last_executed_at, next_scheduled_at,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    1 if schedule.enabled else 0,
                    schedule.interval_value,
                    schedule.interval_unit.value,
                    json.dumps(sorted(schedule.days_of_week)),
                    json.dumps(sorted(schedule.days_of_month)),
                    str(schedule.time_of_day),
                    schedule.timezone,
                    json.dumps(selected_tickers or [], ensure_ascii=False),
                    _to_utc_iso(schedule.last_executed_at),
                    _to_utc_iso(next_scheduled_at),
                    now,
                    now,
                ),
            )
            await db.commit()
            return int(cursor.lastrowid)

    async def get_schedule(self, schedule_id: int) -> ScheduleRecord | None:
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            rows = await db.execute_fetchall(
                "SELECT * FROM rebalance_schedules WHERE id = ?",
                (schedule_id,),
            )
        if not rows:
            return None
        return self._row_to_record(rows[0])

    async def list_schedules(
        self, user_id: str | None = None, include_disabled: bool = False
    ) -> list[ScheduleRecord]:
        clauses = []
        params: list[Any] = []
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        if not include_disabled:
            clauses.append("enabled = 1")

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        query = f"SELECT * FROM rebalance_schedules {where} ORDER BY created_at, id"

        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            rows = await db.execute_fetchall(query, tuple(params))
        return [self._row_to_record(r) for r in rows]

    async def set_enabled(self, schedule_id: int, enabled: bool) -> bool:
        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute(
                """
                UPDATE rebalance_schedules
                SET enabled = ?, updated_at = ?
                WHERE id = ?
                """,
                (1 if enabled else 0, _utc_now_iso(), schedule_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def update_next_scheduled(self, schedule_id: int, next_scheduled_at: datetime | None) -> None:
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                """
                UPDATE rebalance_schedules
                SET next_scheduled_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (_to_utc_iso(next_scheduled_at), _utc_now_iso(), schedule_id),
            )
            await db.commit()

    async def record_execution(
        self,
        record: ScheduleRecord,
        *,
        executed_at: datetime,
        status: str,
        next_scheduled_at: datetime | None,
        error: str | None = None,
    ) -> None:
        """Сохранить факт запуска: last_executed_at, счётчик и следующий запуск."""
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                """
                UPDATE rebalance_schedules
                SET
                    last_executed_at = ?,
                    next_scheduled_at = ?,
                    last_execution_status = ?,
                    last_error = ?,
                    execution_count = execution_count + 1,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    _to_utc_iso(executed_at),
                    _to_utc_iso(next_scheduled_at),
                    status,
                    error,
                    _utc_now_iso(),
                    record.id,
                ),
            )
            await db.commit()

    def _row_to_record(self, row: aiosqlite.Row) -> ScheduleRecord:
        return ScheduleRecord(
            id=int(row["id"]),
            user_id=str(row["user_id"]),
            enabled=bool(row["enabled"]),
            interval_value=int(row["interval_value"]),
            interval_unit=str(row["interval_unit"]),
            day_of_week=json.loads(row["day_of_week"] or "[]"),
            day_of_month=json.loads(row["day_of_month"] or "[]"),
            time_of_day=str(row["time_of_day"]),
            timezone=str(row["timezone"] or "America/New_York"),
            selected_tickers=json.loads(row["selected_tickers"] or "[]"),
            last_executed_at=_from_iso(row["last_executed_at"]),
            next_scheduled_at=_from_iso(row["next_scheduled_at"]),
            execution_count=int(row["execution_count"] or 0),
            last_execution_status=row["last_execution_status"],
            last_error=row["last_error"],
            created_at=str(row["created_at"]),
            updated_at=str(row["updated_at"]),
        )


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_utc_iso(dt: datetime | None) -> str | None:
    return dt.astimezone(timezone.utc).isoformat() if dt else None


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(str(value)).astimezone(timezone.utc)
