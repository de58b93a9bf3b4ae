"""Фоновый loop запуска ребалансировок по расписанию."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Protocol

from rebalance_scheduler.clock.trusted import TimeSource
from rebalance_scheduler.core.action_journal import ActionJournal, JournalEntry
from rebalance_scheduler.core.errors import SchedulingError
from rebalance_scheduler.core.types import NextRunResult
from rebalance_scheduler.scheduler.engine import compute_next_run
from rebalance_scheduler.scheduler.store import ScheduleRecord, ScheduleStore

logger = logging.getLogger(__name__)


class RebalanceExecutor(Protocol):
    async def execute_rebalance(self, record: ScheduleRecord) -> tuple[bool, str]:
        """Запустить ребалансировку по расписанию и вернуть (success, detail)."""


@dataclass
class TickReport:
    """Итог одного тика: что запущено, что скоро, что сломано."""
    now: datetime | None = None
    fired: list[int] = field(default_factory=list)
    upcoming: list[tuple[int, datetime]] = field(default_factory=list)
    misconfigured: list[int] = field(default_factory=list)
    deferred: list[int] = field(default_factory=list)
    clock_approximate: bool = False


class SchedulerLoop:
    """Поллер расписаний с окном опоздания и ограничением скорости.

    Расписание считается к запуску, если следующий запуск, посчитанный от
    (now - grace), уже наступил. Запуски в пределах minutes_ahead только
    сообщаются. Следующий запуск после выполнения считается тем же
    compute_next_run, что и превью.
    """

    def __init__(
        self,
        store: ScheduleStore,
        executor: RebalanceExecutor,
        time_source: TimeSource,
        journal: ActionJournal | None = None,
        tick_seconds: float = 30.0,
        minutes_ahead: int = 35,
        grace_minutes: int = 5,
        max_exec_per_minute: int = 30,
        allow_approximate_clock: bool = False,
    ):
        self._store = store
        self._executor = executor
        self._time_source = time_source
        self._journal = journal
        self._tick_seconds = tick_seconds
        self._ahead = timedelta(minutes=minutes_ahead)
        self._grace = timedelta(minutes=grace_minutes)
        self._max_exec_per_minute = max_exec_per_minute
        self._allow_approximate_clock = allow_approximate_clock
        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()
        self._rate_bucket: deque[datetime] = deque()

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="scheduler-loop")
        logger.info("Scheduler loop запущен")

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Scheduler loop остановлен")

    async def _run(self) -> None:
        while not self._stop.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Ошибка в scheduler tick")
            await asyncio.sleep(self._tick_seconds)

    async def tick(self) -> TickReport:
        trusted = await self._time_source.now()
        now = trusted.instant
        report = TickReport(now=now, clock_approximate=trusted.approximate)

        if trusted.approximate and not self._allow_approximate_clock:
            logger.warning("Точное время недоступно, запуски отложены до следующего тика")
            self._record_event(now, "skipped", "Тик пропущен: локальные часы могут быть неточны")
            return report

        for record, result in await self._evaluate(now):
            if result.is_error:
                report.misconfigured.append(record.id)
                self._record_event(
                    now, "misconfigured",
                    f"Расписание #{record.id}: {result.error_kind}",
                    details=result.detail, schedule_id=record.id,
                )
                continue
            next_run = result.next_run_at
            if next_run is None:
                continue

            if next_run <= now:
                if not self._can_execute_now(now):
                    report.deferred.append(record.id)
                    continue
                await self._fire(record, next_run, now)
                report.fired.append(record.id)
            elif next_run <= now + self._ahead:
                report.upcoming.append((record.id, next_run))
                if record.next_scheduled_at != next_run:
                    await self._store.update_next_scheduled(record.id, next_run)
        return report

    async def upcoming(self, now: datetime) -> list[tuple[ScheduleRecord, datetime]]:
        """Расписания, чей запуск попадает в окно [now - grace, now + minutes_ahead]."""
        window_end = now + self._ahead
        found = [
            (record, result.next_run_at)
            for record, result in await self._evaluate(now)
            if result.next_run_at is not None and result.next_run_at <= window_end
        ]
        return sorted(found, key=lambda item: item[1])

    async def _evaluate(self, now: datetime) -> list[tuple[ScheduleRecord, NextRunResult]]:
        reference = now - self._grace
        evaluated = []
        for record in await self._store.list_schedules():
            try:
                schedule = record.to_schedule()
            except ValueError as e:
                evaluated.append((record, NextRunResult.failed(SchedulingError.invalid_record(str(e)))))
                continue
            evaluated.append((record, compute_next_run(schedule, reference)))
        return evaluated

    async def _fire(self, record: ScheduleRecord, due_at: datetime, now: datetime) -> None:
        """Выполнить запуск, назначенный на due_at.

        last_executed_at = due_at (плановый момент), не момент тика `now`.
        """
        try:
            success, detail = await self._executor.execute_rebalance(record)
        except Exception as e:
            logger.exception(
                "Ребалансировка по расписанию #%d упала", record.id,
                extra={"schedule_id": record.id},
            )
            success, detail = False, str(e)
        self._touch_bucket(now)

        after = compute_next_run(record.to_schedule().with_last_executed(due_at), now)
        await self._store.record_execution(
            record,
            executed_at=due_at,
            status="completed" if success else "error",
            next_scheduled_at=after.next_run_at,
            error=None if success else detail,
        )

        summary = (
            f"Расписание #{record.id}: ребалансировка выполнена"
            if success
            else f"Расписание #{record.id}: ошибка ребалансировки"
        )
        if after.next_run_at:
            summary += f" (next={after.next_run_at.isoformat()})"
        self._record_event(
            now, "rebalance_ok" if success else "rebalance_fail", summary,
            details=detail[:500] if detail else None, schedule_id=record.id,
        )

    def _record_event(
        self,
        now: datetime,
        event_type: str,
        summary: str,
        details: str | None = None,
        schedule_id: int | None = None,
    ) -> None:
        if not self._journal:
            return
        self._journal.record(
            JournalEntry(
                timestamp=now,
                event_type=event_type,
                summary=summary,
                details=details,
                schedule_id=schedule_id,
            )
        )

    def _can_execute_now(self, now: datetime) -> bool:
        while self._rate_bucket and (now - self._rate_bucket[0]).total_seconds() > 60:
            self._rate_bucket.popleft()
        return len(self._rate_bucket) < self._max_exec_per_minute

    def _touch_bucket(self, now: datetime) -> None:
        self._rate_bucket.append(now)
