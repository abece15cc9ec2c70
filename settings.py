from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


_BACKEND_URL_ENV = "BACKEND_URL"
_BACKEND_KEY_ENV = "BACKEND_API_KEY"
_BACKEND_TIMEOUT_ENV = "BACKEND_TIMEOUT_SECONDS"
_SEED_PATH_ENV = "MOCK_BACKEND_SEED_PATH"
_FRESHNESS_ENV = "FRESHNESS_THRESHOLD_SECONDS"
_REFRESH_ENV = "REFRESH_INTERVAL_SECONDS"
_LOOKBACK_ENV = "HISTORY_LOOKBACK_DAYS"
_TIMEZONE_ENV = "DISPLAY_TIMEZONE"
_QUEUE_SIZE_ENV = "CHANGE_QUEUE_SIZE"
_WEBHOOK_SECRET_ENV = "WEBHOOK_SECRET"
_LOG_LEVEL_ENV = "LOG_LEVEL"


@dataclass(frozen=True)
class Settings:
    backend_url: Optional[str]
    backend_api_key: Optional[str]
    backend_timeout: float
    seed_path: Optional[str]
    freshness_threshold: float
    refresh_interval: float
    history_lookback_days: int
    display_timezone: str
    change_queue_size: int
    webhook_secret: Optional[str]
    log_level: str


def _read_str_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or default


def _read_optional_env(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or None


def _read_positive_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = float(candidate)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_int(name: str, default: int, minimum: int = 1) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = int(candidate)
    except ValueError:
        return default
    return parsed if parsed >= minimum else default


def _read_log_level(default: str) -> str:
    value = os.getenv(_LOG_LEVEL_ENV)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    return candidate.upper()


@lru_cache
def get_settings() -> Settings:
    return Settings(
        backend_url=_read_optional_env(_BACKEND_URL_ENV, None),
        backend_api_key=_read_optional_env(_BACKEND_KEY_ENV, None),
        backend_timeout=_read_positive_float(_BACKEND_TIMEOUT_ENV, 10.0),
        seed_path=_read_optional_env(_SEED_PATH_ENV, None),
        freshness_threshold=_read_positive_float(_FRESHNESS_ENV, 12.5),
        refresh_interval=_read_positive_float(_REFRESH_ENV, 10.0),
        history_lookback_days=_read_int(_LOOKBACK_ENV, 7),
        display_timezone=_read_str_env(_TIMEZONE_ENV, "Asia/Kuala_Lumpur"),
        change_queue_size=_read_int(_QUEUE_SIZE_ENV, 1000, minimum=0),
        webhook_secret=_read_optional_env(_WEBHOOK_SECRET_ENV, None),
        log_level=_read_log_level("INFO"),
    )
