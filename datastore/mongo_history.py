"""MongoDB-backed history store."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

import pymongo
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError, PyMongoError

from models.records import Alert, Reading, parse_timestamp
from services.errors import StoreError, StoreTimeoutError


class MongoHistoryStore:
    """Readings and alerts kept in two collections of one database.

    Timestamps are stored as UTC RFC-3339 strings with a fixed-width microsecond
    fraction, so sorting on the string field matches chronological order. Alerts
    are upserted on ``(type, device_id, timestamp)``; writing the same alert twice
    leaves one document.
    """

    def __init__(
        self,
        readings: Collection,
        alerts: Collection,
        client: Optional[MongoClient] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.readings = readings
        self.alerts = alerts
        self.client = client
        self.timeout = timeout

    @classmethod
    def from_uri(
        cls,
        uri: str,
        db_name: str,
        reading_collection: str = "packets",
        alert_collection: str = "alerts",
        timeout: Optional[float] = None,
    ) -> "MongoHistoryStore":
        client: MongoClient = MongoClient(uri)
        db = client[db_name]
        store = cls(db[reading_collection], db[alert_collection], client=client, timeout=timeout)
        store.ensure_indexes()
        return store

    def ensure_indexes(self) -> None:
        with self._guard("create indexes"):
            self.readings.create_index([("device_id", ASCENDING), ("timestamp", DESCENDING)])
            self.alerts.create_index([("device_id", ASCENDING), ("timestamp", DESCENDING)])
            self.alerts.create_index(
                [("type", ASCENDING), ("device_id", ASCENDING), ("timestamp", ASCENDING)],
                unique=True,
            )

    def insert_reading(self, reading: Reading) -> None:
        with self._guard("insert reading"):
            self.readings.insert_one(reading.to_document())

    def find_recent(self, device_id: int, limit: int) -> List[Tuple[datetime, float]]:
        return [
            (reading.timestamp, reading.pressure)
            for reading in self.recent_readings(device_id, limit)
        ]

    def recent_readings(self, device_id: int, limit: int) -> List[Reading]:
        with self._guard("find recent readings"):
            cursor = (
                self.readings.find({"device_id": device_id}, {"_id": 0})
                .sort("timestamp", DESCENDING)
                .limit(limit)
            )
            documents = list(cursor)
        return [self._to_reading(document) for document in documents]

    def insert_alert(self, alert: Alert) -> bool:
        document = alert.to_document()
        key = {field: document[field] for field in ("type", "device_id", "timestamp")}
        with self._guard("insert alert"):
            try:
                result = self.alerts.update_one(key, {"$setOnInsert": document}, upsert=True)
            except DuplicateKeyError:
                # lost an upsert race against an identical write
                return False
        return result.upserted_id is not None

    def list_alerts(self, device_id: Optional[int] = None, limit: int = 100) -> List[Alert]:
        query: Dict[str, Any] = {} if device_id is None else {"device_id": device_id}
        with self._guard("list alerts"):
            cursor = (
                self.alerts.find(query, {"_id": 0})
                .sort("timestamp", DESCENDING)
                .limit(limit)
            )
            documents = list(cursor)
        return [Alert.from_document(document) for document in documents]

    def close(self) -> None:
        if self.client is not None:
            self.client.close()

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            with pymongo.timeout(self.timeout):
                yield
        except PyMongoError as exc:
            if exc.timeout:
                raise StoreTimeoutError(f"MongoDB {operation} timed out") from exc
            raise StoreError(f"MongoDB {operation} failed: {exc}") from exc

    @staticmethod
    def _to_reading(document: Dict[str, Any]) -> Reading:
        return Reading(
            device_id=int(document["device_id"]),
            timestamp=parse_timestamp(document["timestamp"]),
            pressure=float(document["pressure"]),
            temperature=float(document.get("temperature", 0.0)),
        )

