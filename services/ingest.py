"""Write path for readings accepted over HTTP."""

from __future__ import annotations

import json
import logging
from functools import lru_cache

from datastore.history import HistoryStore, build_default_store
from models.records import Reading
from services.errors import StoreError
from settings import get_settings
from transport.memory_queue import InMemoryQueue, build_default_queue

logger = logging.getLogger(__name__)


class IngestService:
    """Persists a validated reading, then publishes it for rule evaluation."""

    def __init__(self, store: HistoryStore, queue: InMemoryQueue) -> None:
        self.store = store
        self.queue = queue

    def accept(self, reading: Reading) -> None:
        try:
            self.store.insert_reading(reading)
        except StoreError:
            raise
        except OSError as exc:
            raise StoreError(f"Failed to persist reading: {exc}") from exc

        body = json.dumps(reading.to_document()).encode("utf-8")
        self.queue.publish(body)
        logger.debug("Reading accepted", extra={"device_id": reading.device_id})


@lru_cache
def build_default_ingest() -> IngestService:
    settings = get_settings()
    return IngestService(
        store=build_default_store(),
        queue=build_default_queue(settings.queue_name),
    )
