from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from rebalance_scheduler.core.types import Schedule

NY = "America/New_York"


@pytest.fixture
def make_schedule() -> Callable[..., Schedule]:
    """Фабрика расписаний: ежедневно в 09:00 America/New_York, поля переопределяются."""

    def factory(**overrides: Any) -> Schedule:
        fields: dict[str, Any] = {
            "interval_value": 1,
            "interval_unit": "days",
            "time_of_day": "09:00",
            "timezone": NY,
        }
        fields.update(overrides)
        return Schedule(**fields)

    return factory
