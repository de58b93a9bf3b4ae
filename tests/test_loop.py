from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

import aiosqlite

from rebalance_scheduler.clock.trusted import FixedTimeSource
from rebalance_scheduler.core.action_journal import ActionJournal
from rebalance_scheduler.core.types import Schedule, TrustedInstant
from rebalance_scheduler.scheduler.engine import compute_next_run
from rebalance_scheduler.scheduler.loop import SchedulerLoop
from rebalance_scheduler.scheduler.preview import preview
from rebalance_scheduler.scheduler.store import ScheduleRecord, ScheduleStore

NY = ZoneInfo("America/New_York")


def ny(*args: int) -> datetime:
    return datetime(*args, tzinfo=NY)


class RecordingExecutor:
    def __init__(self, success: bool = True, error: Exception | None = None) -> None:
        self.calls: list[int] = []
        self._success = success
        self._error = error

    async def execute_rebalance(self, record: ScheduleRecord) -> tuple[bool, str]:
        self.calls.append(record.id)
        if self._error:
            raise self._error
        return self._success, "ok" if self._success else "rejected by broker"


class ApproximateTimeSource:
    def __init__(self, instant: datetime) -> None:
        self._instant = instant

    async def now(self) -> TrustedInstant:
        return TrustedInstant(instant=self._instant, source="local", approximate=True)


async def _store_with(tmp_path: Path, *schedules: Schedule) -> tuple[ScheduleStore, list[int]]:
    store = ScheduleStore(tmp_path / "schedules.db")
    await store.init()
    ids = [await store.create_schedule(user_id="alice", schedule=s) for s in schedules]
    return store, ids


# =============================================================================
# Firing
# =============================================================================


def test_due_schedule_fires_once(tmp_path: Path, make_schedule: Callable[..., Schedule]) -> None:
    schedule = make_schedule()
    now = ny(2026, 6, 15, 9, 2)
    executor = RecordingExecutor()
    journal = ActionJournal()

    async def scenario():
        store, (schedule_id,) = await _store_with(tmp_path, schedule)
        loop = SchedulerLoop(store, executor, FixedTimeSource(now), journal=journal)
        first = await loop.tick()
        second = await loop.tick()
        return schedule_id, first, second, await store.get_schedule(schedule_id)

    schedule_id, first, second, record = asyncio.run(scenario())

    assert first.fired == [schedule_id]
    assert second.fired == []
    assert executor.calls == [schedule_id]
    assert record.last_executed_at == ny(2026, 6, 15, 9, 0)
    assert record.execution_count == 1
    assert record.last_execution_status == "completed"
    assert record.next_scheduled_at == ny(2026, 6, 16, 9, 0)
    assert [e.event_type for e in journal.get_for_schedule(schedule_id)] == ["rebalance_ok"]


def test_stored_next_run_matches_preview(tmp_path: Path, make_schedule: Callable[..., Schedule]) -> None:
    schedule = make_schedule(interval_unit="weeks", days_of_week=[1, 3])
    now = ny(2026, 6, 15, 9, 1)

    async def scenario():
        store, (schedule_id,) = await _store_with(tmp_path, schedule)
        await SchedulerLoop(store, RecordingExecutor(), FixedTimeSource(now)).tick()
        return await store.get_schedule(schedule_id)

    record = asyncio.run(scenario())

    expected = compute_next_run(schedule.with_last_executed(ny(2026, 6, 15, 9, 0)), now)
    shown = preview(record.to_schedule(), TrustedInstant(instant=now, source="fixed"))
    assert record.next_scheduled_at == expected.next_run_at == ny(2026, 6, 17, 9, 0)
    assert shown.result.next_run_at == record.next_scheduled_at


def test_late_tick_within_grace_still_fires(tmp_path: Path, make_schedule: Callable[..., Schedule]) -> None:
    executor = RecordingExecutor()

    async def scenario():
        store, ids = await _store_with(tmp_path, make_schedule())
        report = await SchedulerLoop(store, executor, FixedTimeSource(ny(2026, 6, 15, 9, 4))).tick()
        return ids, report

    ids, report = asyncio.run(scenario())
    assert report.fired == ids


def test_missed_beyond_grace_is_not_fired(tmp_path: Path, make_schedule: Callable[..., Schedule]) -> None:
    executor = RecordingExecutor()

    async def scenario():
        store, _ = await _store_with(tmp_path, make_schedule())
        return await SchedulerLoop(store, executor, FixedTimeSource(ny(2026, 6, 15, 9, 30))).tick()

    report = asyncio.run(scenario())
    assert report.fired == []
    assert executor.calls == []


def test_failed_execution_is_recorded(tmp_path: Path, make_schedule: Callable[..., Schedule]) -> None:
    journal = ActionJournal()
    executor = RecordingExecutor(error=RuntimeError("broker down"))
    now = ny(2026, 6, 15, 9, 0)

    async def scenario():
        store, (schedule_id,) = await _store_with(tmp_path, make_schedule())
        report = await SchedulerLoop(store, executor, FixedTimeSource(now), journal=journal).tick()
        return schedule_id, report, await store.get_schedule(schedule_id)

    schedule_id, report, record = asyncio.run(scenario())

    assert report.fired == [schedule_id]
    assert record.last_execution_status == "error"
    assert record.last_error == "broker down"
    assert record.next_scheduled_at == ny(2026, 6, 16, 9, 0)
    assert "rebalance_fail" in [e.event_type for e in journal.get_for_schedule(schedule_id)]


def test_rate_limit_defers(tmp_path: Path, make_schedule: Callable[..., Schedule]) -> None:
    executor = RecordingExecutor()

    async def scenario():
        store, ids = await _store_with(tmp_path, make_schedule(), make_schedule())
        loop = SchedulerLoop(store, executor, FixedTimeSource(ny(2026, 6, 15, 9, 0)), max_exec_per_minute=1)
        return ids, await loop.tick()

    (first, second), report = asyncio.run(scenario())
    assert report.fired == [first]
    assert report.deferred == [second]


# =============================================================================
# Upcoming window and misconfiguration
# =============================================================================


def test_upcoming_is_reported_and_stored(tmp_path: Path, make_schedule: Callable[..., Schedule]) -> None:
    executor = RecordingExecutor()
    now = ny(2026, 6, 15, 8, 40)

    async def scenario():
        store, (soon, later) = await _store_with(
            tmp_path, make_schedule(), make_schedule(time_of_day="12:00")
        )
        loop = SchedulerLoop(store, executor, FixedTimeSource(now))
        report = await loop.tick()
        window = await loop.upcoming(now)
        return soon, later, report, window, await store.get_schedule(soon)

    soon, later, report, window, record = asyncio.run(scenario())

    assert report.fired == []
    assert report.upcoming == [(soon, ny(2026, 6, 15, 9, 0))]
    assert [(r.id, at) for r, at in window] == [(soon, ny(2026, 6, 15, 9, 0))]
    assert record.next_scheduled_at == ny(2026, 6, 15, 9, 0)
    assert executor.calls == []


def test_misconfigured_schedule_is_journaled(tmp_path: Path, make_schedule: Callable[..., Schedule]) -> None:
    journal = ActionJournal()

    async def scenario():
        store, (broken, healthy) = await _store_with(
            tmp_path, make_schedule(timezone="Mars/Olympus_Mons"), make_schedule()
        )
        loop = SchedulerLoop(store, RecordingExecutor(), FixedTimeSource(ny(2026, 6, 15, 9, 0)), journal=journal)
        return broken, healthy, await loop.tick()

    broken, healthy, report = asyncio.run(scenario())

    assert report.misconfigured == [broken]
    assert report.fired == [healthy]
    entries = journal.get_for_schedule(broken)
    assert entries[0].event_type == "misconfigured"
    assert "invalid_timezone" in entries[0].summary


def test_disabled_schedules_are_ignored(tmp_path: Path, make_schedule: Callable[..., Schedule]) -> None:
    executor = RecordingExecutor()

    async def scenario():
        store, _ = await _store_with(tmp_path, make_schedule(enabled=False))
        return await SchedulerLoop(store, executor, FixedTimeSource(ny(2026, 6, 15, 9, 0))).tick()

    report = asyncio.run(scenario())
    assert report.fired == []
    assert report.misconfigured == []
    assert executor.calls == []


# =============================================================================
# Clock quality
# =============================================================================


def test_approximate_clock_skips_tick(tmp_path: Path, make_schedule: Callable[..., Schedule]) -> None:
    journal = ActionJournal()
    executor = RecordingExecutor()

    async def scenario():
        store, _ = await _store_with(tmp_path, make_schedule())
        loop = SchedulerLoop(store, executor, ApproximateTimeSource(ny(2026, 6, 15, 9, 0)), journal=journal)
        return await loop.tick()

    report = asyncio.run(scenario())

    assert report.clock_approximate
    assert report.fired == []
    assert executor.calls == []
    assert [e.event_type for e in journal.get_recent_errors()] == []
    assert len(journal) == 1


def test_approximate_clock_allowed(tmp_path: Path, make_schedule: Callable[..., Schedule]) -> None:
    executor = RecordingExecutor()

    async def scenario():
        store, ids = await _store_with(tmp_path, make_schedule())
        loop = SchedulerLoop(
            store, executor, ApproximateTimeSource(ny(2026, 6, 15, 9, 0)), allow_approximate_clock=True
        )
        return ids, await loop.tick()

    ids, report = asyncio.run(scenario())
    assert report.clock_approximate
    assert report.fired == ids


def test_start_and_stop(tmp_path: Path, make_schedule: Callable[..., Schedule]) -> None:
    executor = RecordingExecutor()

    async def scenario():
        store, ids = await _store_with(tmp_path, make_schedule())
        loop = SchedulerLoop(store, executor, FixedTimeSource(ny(2026, 6, 15, 9, 0)), tick_seconds=0.01)
        await loop.start()
        for _ in range(100):
            if executor.calls:
                break
            await asyncio.sleep(0.01)
        await loop.stop()
        return ids

    ids = asyncio.run(scenario())
    assert executor.calls == ids


def test_corrupt_record_is_misconfigured(tmp_path: Path, make_schedule: Callable[..., Schedule]) -> None:
    journal = ActionJournal()

    async def scenario():
        store, (schedule_id,) = await _store_with(tmp_path, make_schedule())
        async with aiosqlite.connect(tmp_path / "schedules.db") as db:
            await db.execute("UPDATE rebalance_schedules SET time_of_day = 'noon' WHERE id = ?", (schedule_id,))
            await db.commit()
        loop = SchedulerLoop(store, RecordingExecutor(), FixedTimeSource(ny(2026, 6, 15, 9, 0)), journal=journal)
        return schedule_id, await loop.tick()

    schedule_id, report = asyncio.run(scenario())

    assert report.misconfigured == [schedule_id]
    assert "invalid_record" in journal.get_for_schedule(schedule_id)[0].summary


# =============================================================================
# Late ticks across local midnight
# =============================================================================


def test_late_tick_after_midnight_keeps_daily_slot(
    tmp_path: Path, make_schedule: Callable[..., Schedule]
) -> None:
    schedule = make_schedule(time_of_day="23:58", last_executed_at=ny(2026, 6, 14, 23, 58))

    async def scenario():
        store, (schedule_id,) = await _store_with(tmp_path, schedule)
        # тик опоздал на 3 минуты и пришёл уже 16-го
        report = await SchedulerLoop(store, RecordingExecutor(), FixedTimeSource(ny(2026, 6, 16, 0, 1))).tick()
        return schedule_id, report, await store.get_schedule(schedule_id)

    schedule_id, report, record = asyncio.run(scenario())

    assert report.fired == [schedule_id]
    assert record.last_executed_at == ny(2026, 6, 15, 23, 58)
    assert record.next_scheduled_at == ny(2026, 6, 16, 23, 58)


def test_late_tick_after_midnight_keeps_month_end(
    tmp_path: Path, make_schedule: Callable[..., Schedule]
) -> None:
    schedule = make_schedule(
        interval_unit="months",
        time_of_day="23:58",
        last_executed_at=ny(2026, 7, 31, 23, 58),
    )

    async def scenario():
        store, (schedule_id,) = await _store_with(tmp_path, schedule)
        report = await SchedulerLoop(store, RecordingExecutor(), FixedTimeSource(ny(2026, 9, 1, 0, 1))).tick()
        return schedule_id, report, await store.get_schedule(schedule_id)

    schedule_id, report, record = asyncio.run(scenario())

    assert report.fired == [schedule_id]
    assert record.last_executed_at == ny(2026, 8, 31, 23, 58)
    assert record.next_scheduled_at == ny(2026, 9, 30, 23, 58)
