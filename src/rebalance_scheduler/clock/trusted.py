"""Доверенный источник текущего времени.

Локальные часы клиента могут уходить, поэтому опорный момент для расчёта
расписаний берётся с сервера точного времени. Смещение сервер/локальные
часы кэшируется, при недоступности сервера используется локальное время
с пометкой approximate=True.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

import httpx

from rebalance_scheduler.core.types import TrustedInstant

logger = logging.getLogger(__name__)

DEFAULT_URL = "https://worldtimeapi.org/api/timezone/Etc/UTC"
_DEFAULT_TIMEOUT = 5.0
_DEFAULT_CACHE_SECONDS = 60.0


class TimeSource(Protocol):
    async def now(self) -> TrustedInstant:
        """Вернуть опорный момент и его происхождение."""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TrustedTimeSource:
    """Время с WorldTimeAPI-совместимого эндпоинта с кэшем смещения."""

    def __init__(
        self,
        url: str = DEFAULT_URL,
        timeout: float = _DEFAULT_TIMEOUT,
        cache_seconds: float = _DEFAULT_CACHE_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] = _utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self._url = url
        self._timeout = timeout
        self._cache_seconds = cache_seconds
        self._transport = transport
        self._clock = clock
        self._monotonic = monotonic
        self._offset: timedelta | None = None
        self._fetched_at: float | None = None

    @property
    def offset(self) -> timedelta | None:
        """Последнее измеренное смещение сервер - локальные часы."""
        return self._offset

    def invalidate(self) -> None:
        self._offset = None
        self._fetched_at = None

    async def now(self) -> TrustedInstant:
        mono = self._monotonic()
        if (
            self._offset is not None
            and self._fetched_at is not None
            and mono - self._fetched_at < self._cache_seconds
        ):
            return TrustedInstant(instant=self._clock() + self._offset, source="trusted")

        try:
            server_time = await self._fetch()
        except (httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(
                "Не удалось получить точное время с %s: %s. Используем локальные часы",
                self._url, e,
            )
            return TrustedInstant(instant=self._clock(), source="local", approximate=True)

        self._offset = server_time - self._clock()
        self._fetched_at = mono
        logger.debug("Смещение локальных часов: %s", self._offset)
        return TrustedInstant(instant=server_time, source="trusted")

    async def _fetch(self) -> datetime:
        async with httpx.AsyncClient(
            timeout=self._timeout,
            transport=self._transport,
            headers={"User-Agent": "RebalanceScheduler/1.0"},
        ) as client:
            resp = await client.get(self._url)
            resp.raise_for_status()
        return parse_server_time(resp.json())


class FixedTimeSource:
    """Фиксированное время: тесты и офлайн-превью из CLI."""

    def __init__(self, instant: datetime):
        if instant.utcoffset() is None:
            raise ValueError("instant должен содержать таймзону")
        self._instant = instant

    async def now(self) -> TrustedInstant:
        return TrustedInstant(instant=self._instant, source="fixed")


def parse_server_time(payload: dict[str, Any]) -> datetime:
    """Достать UTC-время из ответа WorldTimeAPI (utc_datetime или unixtime)."""
    raw = payload.get("utc_datetime")
    if isinstance(raw, str) and raw:
        dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        if dt.utcoffset() is None:
            raise ValueError(f"utc_datetime без таймзоны: {raw!r}")
        return dt.astimezone(timezone.utc)
    unixtime = payload["unixtime"]
    return datetime.fromtimestamp(float(unixtime), tz=timezone.utc)
