from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


_DEVICE_KEY_ENV = "DEVICE_KEY"
_DEVICE_KEYS_JSON_ENV = "DEVICE_KEYS_JSON"
_RATE_LIMIT_ENV = "RATE_LIMIT_MIN_INTERVAL_MS"
_API_VERSION_ENV = "API_VERSION"
_STORE_PATH_ENV = "TELEMETRY_STORE_PATH"
_STORE_TIMEOUT_ENV = "STORE_TIMEOUT_SECONDS"
_STORE_WORKERS_ENV = "STORE_WORKER_COUNT"
_ENVIRONMENT_ENV = "APP_ENV"
_LOG_LEVEL_ENV = "LOG_LEVEL"


@dataclass(frozen=True)
class Settings:
    device_key: Optional[str]
    device_keys_json: Optional[str]
    rate_limit_min_interval_ms: int
    api_version: str
    store_persistence_path: Optional[str]
    store_timeout_seconds: float
    store_workers: int
    environment: str
    log_level: str

    @property
    def rate_limit_min_interval(self) -> float:
        return self.rate_limit_min_interval_ms / 1000.0

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


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


def _read_int_env(name: str, default: int, minimum: int = 1) -> int:
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


def _read_float_env(name: str, default: float) -> float:
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
        device_key=_read_optional_env(_DEVICE_KEY_ENV, None),
        device_keys_json=_read_optional_env(_DEVICE_KEYS_JSON_ENV, None),
        rate_limit_min_interval_ms=_read_int_env(_RATE_LIMIT_ENV, 2000, minimum=0),
        api_version=_read_str_env(_API_VERSION_ENV, "0.4.0"),
        store_persistence_path=_read_optional_env(_STORE_PATH_ENV, "./tmp/telemetry_db.json"),
        store_timeout_seconds=_read_float_env(_STORE_TIMEOUT_ENV, 5.0),
        store_workers=_read_int_env(_STORE_WORKERS_ENV, 4),
        environment=_read_str_env(_ENVIRONMENT_ENV, "development").lower(),
        log_level=_read_log_level("INFO"),
    )
