"""Загрузка и резолв конфигурации."""

from __future__ import annotations

import os
import re
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from rebalance_scheduler.clock.trusted import DEFAULT_URL

logger = logging.getLogger(__name__)

_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


def load_config(config_path: Path | str = "config.yaml") -> dict[str, Any]:
    """Загрузить config.yaml с подстановкой переменных окружения."""
    config_path = Path(config_path)
    if not config_path.exists():
        logger.warning("Конфиг не найден: %s, используем значения по умолчанию", config_path)
        return {}

    with open(config_path, encoding="utf-8") as f:
        raw = f.read()

    resolved = _resolve_env_vars(raw)

    try:
        config = yaml.safe_load(resolved) or {}
    except yaml.YAMLError:
        logger.exception("Ошибка парсинга %s", config_path)
        return {}

    if not isinstance(config, dict):
        logger.warning("Корень %s должен быть словарём, получено %s", config_path, type(config).__name__)
        return {}
    return config


def _resolve_env_vars(text: str) -> str:
    """Заменить ${VAR_NAME} на значения из os.environ."""
    def replacer(match: re.Match) -> str:
        var_name = match.group(1)
        value = os.environ.get(var_name, "")
        if not value:
            logger.warning("Переменная окружения %s не задана", var_name)
        return value

    return _ENV_PATTERN.sub(replacer, text)


def get_project_root() -> Path:
    """Определить корень проекта (где лежит config.yaml или pyproject.toml)."""
    current = Path(__file__).resolve()
    for parent in [current] + list(current.parents):
        if (parent / "config.yaml").exists() or (parent / "pyproject.toml").exists():
            return parent
    return Path.cwd()


class SchedulerSettings(BaseModel):
    """Настройки триггера и источника времени из секций clock/scheduler/storage."""

    clock_url: str = DEFAULT_URL
    clock_timeout_seconds: float = Field(default=5.0, gt=0)
    clock_cache_seconds: float = Field(default=60.0, ge=0)
    tick_seconds: float = Field(default=30.0, gt=0)
    minutes_ahead: int = Field(default=35, ge=0)
    grace_minutes: int = Field(default=5, ge=0)
    allow_approximate_clock: bool = False
    db_path: str = "data/schedules.db"

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> SchedulerSettings:
        clock = config.get("clock") or {}
        scheduler = config.get("scheduler") or {}
        storage = config.get("storage") or {}
        values = {
            "clock_url": clock.get("url"),
            "clock_timeout_seconds": clock.get("timeout_seconds"),
            "clock_cache_seconds": clock.get("cache_seconds"),
            "tick_seconds": scheduler.get("tick_seconds"),
            "minutes_ahead": scheduler.get("minutes_ahead"),
            "grace_minutes": scheduler.get("grace_minutes"),
            "allow_approximate_clock": scheduler.get("allow_approximate_clock"),
            "db_path": storage.get("db_path"),
        }
        return cls(**{k: v for k, v in values.items() if v is not None})
