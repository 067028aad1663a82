"""History store contract and the in-memory backend."""

from __future__ import annotations

import json
from datetime import datetime
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple

from models.records import Alert, Reading, parse_timestamp
from settings import get_settings


class HistoryStore(Protocol):
    """Durable readings history plus a separate alert sink."""

    def insert_reading(self, reading: Reading) -> None:
        ...

    def find_recent(self, device_id: int, limit: int) -> List[Tuple[datetime, float]]:
        """Return up to ``limit`` (timestamp, pressure) pairs, newest first."""
        ...

    def recent_readings(self, device_id: int, limit: int) -> List[Reading]:
        ...

    def insert_alert(self, alert: Alert) -> bool:
        """Record ``alert`` once; return False when it was already recorded."""
        ...

    def list_alerts(self, device_id: Optional[int] = None, limit: int = 100) -> List[Alert]:
        ...

    def close(self) -> None:
        ...


class InMemoryHistoryStore:
    """Thread-safe store with optional JSON persistence on every write."""

    def __init__(self, name: str, persistence_path: Optional[Path] = None) -> None:
        self.name = name
        self._readings: Dict[int, List[Reading]] = {}
        self._alerts: List[Alert] = []
        self._alert_keys: Set[Tuple[str, int, datetime]] = set()
        self.persistence_path = persistence_path
        self._lock = Lock()
        if persistence_path:
            persistence_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_from_disk()

    def insert_reading(self, reading: Reading) -> None:
        with self._lock:
            self._readings.setdefault(reading.device_id, []).append(reading)
            self._persist()

    def recent_readings(self, device_id: int, limit: int) -> List[Reading]:
        with self._lock:
            readings = list(self._readings.get(device_id, ()))
        readings.sort(key=lambda reading: reading.timestamp, reverse=True)
        return readings[:limit]

    def find_recent(self, device_id: int, limit: int) -> List[Tuple[datetime, float]]:
        return [
            (reading.timestamp, reading.pressure)
            for reading in self.recent_readings(device_id, limit)
        ]

    def insert_alert(self, alert: Alert) -> bool:
        with self._lock:
            if not self._remember_alert(alert):
                return False
            self._alerts.append(alert)
            self._persist()
            return True

    def list_alerts(self, device_id: Optional[int] = None, limit: int = 100) -> List[Alert]:
        with self._lock:
            alerts = [
                alert
                for alert in self._alerts
                if device_id is None or alert.device_id == device_id
            ]
        alerts.reverse()
        return alerts[:limit]

    def close(self) -> None:
        with self._lock:
            self._persist()

    def _persist(self) -> None:
        if not self.persistence_path:
            return
        payload: Dict[str, Any] = {
            "readings": [
                reading.to_document()
                for device_readings in self._readings.values()
                for reading in device_readings
            ],
            "alerts": [alert.to_document() for alert in self._alerts],
        }
        self.persistence_path.write_text(json.dumps(payload, indent=2, sort_keys=True))

    def _load_from_disk(self) -> None:
        if not self.persistence_path or not self.persistence_path.exists():
            return

        try:
            raw = self.persistence_path.read_text() or "{}"
            data = json.loads(raw)
        except (OSError, json.JSONDecodeError):
            data = {}

        for document in data.get("readings", []):
            reading = Reading(
                device_id=int(document["device_id"]),
                timestamp=parse_timestamp(document["timestamp"]),
                pressure=float(document["pressure"]),
                temperature=float(document["temperature"]),
            )
            self._readings.setdefault(reading.device_id, []).append(reading)
        for document in data.get("alerts", []):
            alert = Alert.from_document(document)
            if self._remember_alert(alert):
                self._alerts.append(alert)

    def _remember_alert(self, alert: Alert) -> bool:
        key = (alert.kind.value, alert.device_id, alert.timestamp)
        if key in self._alert_keys:
            return False
        self._alert_keys.add(key)
        return True


def build_store(name: Optional[str] = None, path: Optional[str] = None) -> HistoryStore:
    """Construct the configured backend without caching."""
    settings = get_settings()
    if settings.store_backend == "mongo":
        from datastore.mongo_history import MongoHistoryStore

        return MongoHistoryStore.from_uri(
            settings.mongo_uri,
            settings.mongo_db,
            reading_collection=settings.reading_collection,
            alert_collection=settings.alert_collection,
            timeout=settings.store_timeout,
        )
    store_name = name or "history"
    store_path = settings.store_path if path is None else path
    persistence = Path(store_path) if store_path else None
    return InMemoryHistoryStore(name=store_name, persistence_path=persistence)


@lru_cache
def build_default_store() -> HistoryStore:
    return build_store()

