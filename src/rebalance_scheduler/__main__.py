"""Entry point: python -m rebalance_scheduler {preview,list,run}."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path

from dotenv import load_dotenv

from rebalance_scheduler.clock.trusted import FixedTimeSource, TimeSource, TrustedTimeSource
from rebalance_scheduler.core.action_journal import ActionJournal
from rebalance_scheduler.core.config import SchedulerSettings, get_project_root, load_config
from rebalance_scheduler.core.log_interceptor import LogInterceptor
from rebalance_scheduler.core.types import IntervalUnit, Schedule
from rebalance_scheduler.scheduler.loop import SchedulerLoop
from rebalance_scheduler.scheduler.preview import format_instant, preview_now
from rebalance_scheduler.scheduler.store import ScheduleRecord, ScheduleStore

logger = logging.getLogger("rebalance_scheduler")


def setup_logging(log_dir: Path | None, journal: ActionJournal | None = None, level: int = logging.INFO) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler(stream=sys.stderr)]
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_dir / "rebalance_scheduler.log", encoding="utf-8"))
    if journal:
        handlers.append(LogInterceptor(journal))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


class LoggingExecutor:
    """Заглушка исполнителя: реальная ребалансировка живёт во внешнем воркфлоу брокера."""

    async def execute_rebalance(self, record: ScheduleRecord) -> tuple[bool, str]:
        tickers = ", ".join(record.selected_tickers) or "все позиции"
        logger.info("Ребалансировка по расписанию #%d (user=%s): %s", record.id, record.user_id, tickers)
        return True, "dispatched"


def build_time_source(settings: SchedulerSettings, fixed_now: str | None = None) -> TimeSource:
    if fixed_now:
        return FixedTimeSource(_parse_instant(fixed_now))
    return TrustedTimeSource(
        url=settings.clock_url,
        timeout=settings.clock_timeout_seconds,
        cache_seconds=settings.clock_cache_seconds,
    )


def schedule_from_args(args: argparse.Namespace) -> Schedule:
    unit = IntervalUnit(args.unit)
    days = [int(x) for x in args.days.split(",") if x.strip()] if args.days else []
    return Schedule(
        interval_value=args.every,
        interval_unit=unit,
        days_of_week=frozenset(days) if unit == IntervalUnit.WEEKS else frozenset(),
        days_of_month=frozenset(days) if unit == IntervalUnit.MONTHS else frozenset(),
        time_of_day=args.time,
        timezone=args.tz,
        last_executed_at=_parse_instant(args.last_run) if args.last_run else None,
        enabled=not args.disabled,
    )


def _parse_instant(value: str) -> datetime:
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


async def cmd_preview(args: argparse.Namespace, settings: SchedulerSettings) -> int:
    try:
        schedule = schedule_from_args(args)
        time_source = build_time_source(settings, args.now)
    except ValueError as e:
        print(f"Некорректное расписание: {e}", file=sys.stderr)
        return 2

    result = await preview_now(schedule, time_source, count=args.count)
    print(result.description)
    print(f"Next run: {result.text}")
    for at in result.upcoming[1:]:
        print(f"  then:   {format_instant(at, schedule.timezone)}")
    if result.clock_note:
        print(f"({result.clock_note})")
    return 1 if result.result.is_error else 0


async def cmd_list(args: argparse.Namespace, settings: SchedulerSettings, project_root: Path) -> int:
    store = ScheduleStore(project_root / settings.db_path)
    await store.init()
    time_source = build_time_source(settings, args.now)
    records = await store.list_schedules(user_id=args.user, include_disabled=True)
    if not records:
        print("Расписаний нет.")
        return 0
    for record in records:
        try:
            schedule = record.to_schedule()
        except ValueError as e:
            print(f"#{record.id} [{record.user_id}] некорректная запись: {e}")
            continue
        view = await preview_now(schedule, time_source)
        print(f"#{record.id} [{record.user_id}] {view.description} -> {view.text}")
    return 0


async def cmd_run(args: argparse.Namespace, settings: SchedulerSettings, project_root: Path, journal: ActionJournal) -> int:
    store = ScheduleStore(project_root / settings.db_path)
    await store.init()

    scheduler_loop = SchedulerLoop(
        store=store,
        executor=LoggingExecutor(),
        time_source=build_time_source(settings, args.now),
        journal=journal,
        tick_seconds=settings.tick_seconds,
        minutes_ahead=settings.minutes_ahead,
        grace_minutes=settings.grace_minutes,
        allow_approximate_clock=settings.allow_approximate_clock,
    )

    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("Получен сигнал остановки")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            pass

    await scheduler_loop.start()
    logger.info("Планировщик запущен, тик каждые %.0f с", settings.tick_seconds)
    try:
        await stop_event.wait()
    finally:
        await scheduler_loop.stop()
        print(journal.build_report())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rebalance_scheduler",
        description="Расчёт и запуск расписаний ребалансировки портфеля",
    )
    parser.add_argument("--config", default=None, help="Путь к config.yaml")
    parser.add_argument("--verbose", "-v", action="store_true", help="Подробные логи")
    sub = parser.add_subparsers(dest="command", required=True)

    p_preview = sub.add_parser("preview", help="Показать следующие запуски расписания")
    p_preview.add_argument("--every", type=int, default=1, help="Интервал N")
    p_preview.add_argument("--unit", choices=[u.value for u in IntervalUnit], default="days")
    p_preview.add_argument("--days", default="", help="Дни недели 0..6 (0 = вс) или дни месяца 1..31 через запятую")
    p_preview.add_argument("--time", default="09:00", help="Время HH:MM или h:mm AM/PM")
    p_preview.add_argument("--tz", default="America/New_York", help="IANA timezone")
    p_preview.add_argument("--last-run", default=None, help="ISO время последнего запуска")
    p_preview.add_argument("--now", default=None, help="ISO опорное время вместо доверенных часов")
    p_preview.add_argument("--count", type=int, default=3, help="Сколько запусков показать")
    p_preview.add_argument("--disabled", action="store_true", help="Расписание на паузе")

    p_list = sub.add_parser("list", help="Список сохранённых расписаний")
    p_list.add_argument("--user", default=None)
    p_list.add_argument("--now", default=None)

    p_run = sub.add_parser("run", help="Запустить поллер расписаний")
    p_run.add_argument("--now", default=None, help="Зафиксировать время (для отладки)")
    return parser


async def run(args: argparse.Namespace) -> int:
    project_root = get_project_root()
    load_dotenv(project_root / ".env")

    journal = ActionJournal(max_entries=200)
    log_dir = project_root / "logs" if args.command == "run" else None
    setup_logging(log_dir, journal=journal, level=logging.DEBUG if args.verbose else logging.INFO)

    config = load_config(Path(args.config) if args.config else project_root / "config.yaml")
    settings = SchedulerSettings.from_config(config)

    if args.command == "preview":
        return await cmd_preview(args, settings)
    if args.command == "list":
        return await cmd_list(args, settings, project_root)
    return await cmd_run(args, settings, project_root, journal)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
