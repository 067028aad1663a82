from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


_WINDOW_SIZE_ENV = "SUSTAINED_WINDOW_SIZE"
_DELTA_PRESSURE_ENV = "SUSTAINED_DELTA_PRESSURE"
_STORE_TIMEOUT_ENV = "STORE_TIMEOUT_SECONDS"
_POLL_INTERVAL_ENV = "CONSUMER_POLL_INTERVAL"
_ACK_POLICY_ENV = "ACK_POLICY"
_QUEUE_NAME_ENV = "QUEUE_NAME"
_STORE_BACKEND_ENV = "HISTORY_STORE_BACKEND"
_STORE_PATH_ENV = "HISTORY_STORE_PATH"
_MONGO_URI_ENV = "MONGO_URI"
_MONGO_DB_ENV = "MONGO_DB"
_READING_COLLECTION_ENV = "READING_COLLECTION"
_ALERT_COLLECTION_ENV = "ALERT_COLLECTION"
_LOG_LEVEL_ENV = "LOG_LEVEL"

ACK_POLICIES = ("best_effort", "redeliver")
STORE_BACKENDS = ("memory", "mongo")


@dataclass(frozen=True)
class Settings:
    window_size: int
    delta_pressure: float
    store_timeout: float
    poll_interval: float
    ack_policy: str
    queue_name: str
    store_backend: str
    store_path: Optional[str]
    mongo_uri: str
    mongo_db: str
    reading_collection: str
    alert_collection: str
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


def _read_positive_int(name: str, default: int) -> int:
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
    return parsed if parsed > 0 else default


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


def _read_choice(name: str, choices: tuple[str, ...], default: str) -> str:
    candidate = _read_str_env(name, default).lower()
    return candidate if candidate in choices else default


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
        window_size=_read_positive_int(_WINDOW_SIZE_ENV, 10),
        delta_pressure=_read_positive_float(_DELTA_PRESSURE_ENV, 0.0000196133),
        store_timeout=_read_positive_float(_STORE_TIMEOUT_ENV, 5.0),
        poll_interval=_read_positive_float(_POLL_INTERVAL_ENV, 0.5),
        ack_policy=_read_choice(_ACK_POLICY_ENV, ACK_POLICIES, "best_effort"),
        queue_name=_read_str_env(_QUEUE_NAME_ENV, "packets"),
        store_backend=_read_choice(_STORE_BACKEND_ENV, STORE_BACKENDS, "memory"),
        store_path=_read_optional_env(_STORE_PATH_ENV, "./tmp/history.json"),
        mongo_uri=_read_str_env(_MONGO_URI_ENV, "mongodb://localhost:27017"),
        mongo_db=_read_str_env(_MONGO_DB_ENV, "iot"),
        reading_collection=_read_str_env(_READING_COLLECTION_ENV, "packets"),
        alert_collection=_read_str_env(_ALERT_COLLECTION_ENV, "alerts"),
        log_level=_read_log_level("INFO"),
    )
