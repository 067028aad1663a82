"""Stream consumer that evaluates alert rules for every queued reading."""

from __future__ import annotations

import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from threading import Event, Lock, Thread
from typing import Any, Callable, Dict, List, Optional, Protocol, TypeVar

from datastore.history import HistoryStore, build_default_store
from models.records import Alert, AlertKind, Reading, parse_timestamp
from services.errors import (
    ChannelClosedError,
    DecodeError,
    RuleEngineError,
    StoreError,
    StoreTimeoutError,
)
from services.rules import PressurePoint, RuleEvaluator, points_from_readings
from services.window_cache import WindowCache
from settings import get_settings
from transport.memory_queue import Delivery, InMemoryQueue, build_default_queue

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConsumerState(str, Enum):
    """Lifecycle of a consumer instance."""

    idle = "idle"
    consuming = "consuming"
    stopped = "stopped"


class AckPolicy(Protocol):
    name: str

    def settle(self, delivery: Delivery, error: Optional[RuleEngineError]) -> bool:
        """Ack or nack the delivery; return True when it was acked."""
        ...


class BestEffortAck:
    """Acknowledge every message regardless of outcome; nothing is retried."""

    name = "best_effort"

    def settle(self, delivery: Delivery, error: Optional[RuleEngineError]) -> bool:
        delivery.ack()
        return True


class RedeliverOnStoreError:
    """Requeue messages whose store interaction failed; ack everything else."""

    name = "redeliver"

    def settle(self, delivery: Delivery, error: Optional[RuleEngineError]) -> bool:
        if isinstance(error, StoreError):
            delivery.nack(requeue=True)
            return False
        delivery.ack()
        return True


_ACK_POLICIES: Dict[str, Callable[[], AckPolicy]] = {
    BestEffortAck.name: BestEffortAck,
    RedeliverOnStoreError.name: RedeliverOnStoreError,
}


def build_ack_policy(name: str) -> AckPolicy:
    try:
        return _ACK_POLICIES[name]()
    except KeyError as exc:
        raise ValueError(f"Unknown acknowledgment policy {name!r}.") from exc


@dataclass
class ConsumerStats:
    """Counters surfaced to the HTTP layer."""

    received: int = 0
    processed: int = 0
    decode_errors: int = 0
    store_errors: int = 0
    store_fallbacks: int = 0
    instant_alerts: int = 0
    sustained_alerts: int = 0
    acked: int = 0
    nacked: int = 0
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def incr(self, name: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + amount)

    def as_dict(self) -> Dict[str, int]:
        with self._lock:
            return {
                "received": self.received,
                "processed": self.processed,
                "decode_errors": self.decode_errors,
                "store_errors": self.store_errors,
                "store_fallbacks": self.store_fallbacks,
                "instant_alerts": self.instant_alerts,
                "sustained_alerts": self.sustained_alerts,
                "acked": self.acked,
                "nacked": self.nacked,
            }


@dataclass
class ProcessingOutcome:
    """What happened to a single message."""

    reading: Optional[Reading] = None
    alerts: List[Alert] = field(default_factory=list)
    error: Optional[RuleEngineError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class StreamConsumer:
    """Pulls readings off a queue, evaluates rules, stores alerts, settles.

    Messages are processed one at a time. The window cache may be shared with
    other consumers reading the same queue.
    """

    def __init__(
        self,
        queue: InMemoryQueue,
        store: HistoryStore,
        evaluator: RuleEvaluator,
        cache: Optional[WindowCache] = None,
        ack_policy: Optional[AckPolicy] = None,
        store_timeout: float = 5.0,
        poll_interval: float = 0.5,
        store_workers: int = 2,
    ) -> None:
        self.queue = queue
        self.store = store
        self.evaluator = evaluator
        self.cache = cache if cache is not None else WindowCache(evaluator.window_size)
        self.ack_policy = ack_policy if ack_policy is not None else BestEffortAck()
        self.store_timeout = store_timeout
        self.poll_interval = poll_interval
        self.stats = ConsumerStats()
        self.executor = ThreadPoolExecutor(
            max_workers=store_workers, thread_name_prefix="history-store"
        )
        self._state = ConsumerState.idle
        self._state_lock = Lock()
        self._stop_event = Event()
        self._thread: Optional[Thread] = None

    @property
    def state(self) -> ConsumerState:
        return self._state

    def start(self) -> None:
        """Run the consume loop on a background thread."""
        with self._state_lock:
            if self._thread is not None:
                raise RuntimeError("Consumer already started.")
            self._thread = Thread(target=self.run, name="stream-consumer", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal shutdown and wait for the in-flight message to finish."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread.is_alive():
            thread.join(timeout)
        if thread is None:
            self._set_state(ConsumerState.stopped)
        self.executor.shutdown(wait=False, cancel_futures=True)

    def run(self) -> None:
        """Blocking consume loop; returns once stopped or the channel closes."""
        if self._stop_event.is_set():
            self._set_state(ConsumerState.stopped)
            return
        self._set_state(ConsumerState.consuming)
        logger.info(
            "Consumer started",
            extra={"policy": self.ack_policy.name, "state": self._state.value},
        )
        try:
            while not self._stop_event.is_set():
                try:
                    delivery = self.queue.get(timeout=self.poll_interval)
                except ChannelClosedError as exc:
                    logger.error("Reading channel closed", extra={"error": str(exc)})
                    break
                if delivery is None:
                    continue
                if self._stop_event.is_set():
                    # stop observed while waiting; hand the message back untouched
                    delivery.nack(requeue=True)
                    break
                self.handle_delivery(delivery)
        finally:
            self._set_state(ConsumerState.stopped)
            logger.info("Consumer stopped", extra={"state": self._state.value})

    def handle_delivery(self, delivery: Delivery) -> ProcessingOutcome:
        """Process one delivery and settle it exactly once."""
        self.stats.incr("received")
        outcome = self.process_message(delivery.body, redelivered=delivery.redelivered)
        try:
            acked = self.ack_policy.settle(delivery, outcome.error)
        except (ChannelClosedError, RuntimeError) as exc:
            logger.error(
                "Failed to settle delivery",
                extra={"delivery_tag": delivery.delivery_tag, "error": str(exc)},
            )
            return outcome
        self.stats.incr("acked" if acked else "nacked")
        return outcome

    def process_message(self, body: bytes, redelivered: bool = False) -> ProcessingOutcome:
        """Decode, cache and evaluate one message.

        A redelivered message may already sit in the window from its first
        attempt, so it is only appended when absent. Alert writes are idempotent
        in the store, so a retry records only the alerts the first attempt missed.
        """
        outcome = ProcessingOutcome()
        try:
            reading = self.decode(body)
        except DecodeError as exc:
            self.stats.incr("decode_errors")
            logger.warning("Dropping undecodable message", extra={"error": str(exc)})
            outcome.error = exc
            return outcome

        outcome.reading = reading
        # the cache records what was seen, even if the store writes below fail
        if redelivered:
            self.cache.append_once(reading)
        else:
            self.cache.append(reading)
        deadline = time.monotonic() + self.store_timeout

        try:
            instant = self.evaluator.evaluate_instant(reading)
            if instant is not None:
                if self._write_alert(instant, deadline):
                    outcome.alerts.append(instant)

            window = self._resolve_window(reading, deadline)
            if window is not None:
                sustained = self.evaluator.evaluate_sustained(reading, window)
                if sustained is not None:
                    if self._write_alert(sustained, deadline):
                        outcome.alerts.append(sustained)
        except StoreError as exc:
            self.stats.incr("store_errors")
            logger.warning(
                "History store failure while processing reading",
                extra={"device_id": reading.device_id, "error": str(exc)},
            )
            outcome.error = exc
        except Exception as exc:  # noqa: BLE001 - per-message failures never stop the loop
            logger.exception(
                "Unexpected failure while processing reading",
                extra={"device_id": reading.device_id},
            )
            outcome.error = RuleEngineError(str(exc))
        else:
            self.stats.incr("processed")
        return outcome

    @staticmethod
    def decode(body: bytes) -> Reading:
        try:
            payload: Any = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise DecodeError(f"Payload is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise DecodeError("Payload must be a JSON object.")

        missing = sorted(
            {"device_id", "timestamp", "pressure", "temperature"} - payload.keys()
        )
        if missing:
            raise DecodeError(f"Payload missing fields: {', '.join(missing)}")

        device_id = payload["device_id"]
        if isinstance(device_id, bool) or not isinstance(device_id, int):
            raise DecodeError("device_id must be an integer.")
        timestamp = payload["timestamp"]
        if not isinstance(timestamp, str):
            raise DecodeError("timestamp must be a string.")
        try:
            parsed_timestamp = parse_timestamp(timestamp)
        except ValueError as exc:
            raise DecodeError(f"Invalid timestamp {timestamp!r}") from exc

        values = []
        for name in ("pressure", "temperature"):
            value = payload[name]
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise DecodeError(f"{name} must be a number.")
            values.append(float(value))

        return Reading(
            device_id=device_id,
            timestamp=parsed_timestamp,
            pressure=values[0],
            temperature=values[1],
        )

    def _resolve_window(
        self, reading: Reading, deadline: float
    ) -> Optional[List[PressurePoint]]:
        snapshot = self.cache.snapshot(reading.device_id)
        if snapshot.readings is not None:
            return points_from_readings(snapshot.readings)

        self.stats.incr("store_fallbacks")
        limit = self.evaluator.window_size
        recent = self._call_store(self.store.find_recent, reading.device_id, limit, deadline=deadline)
        if len(recent) < limit:
            return None
        return sorted(recent, key=lambda point: point[0])

    def _write_alert(self, alert: Alert, deadline: float) -> bool:
        written = self._call_store(self.store.insert_alert, alert, deadline=deadline)
        if not written:
            logger.info(
                "Alert already recorded",
                extra={"device_id": alert.device_id, "kind": alert.kind.value},
            )
            return False
        counter = "instant_alerts" if alert.kind is AlertKind.instant else "sustained_alerts"
        self.stats.incr(counter)
        extra: Dict[str, Any] = {
            "device_id": alert.device_id,
            "kind": alert.kind.value,
            "reason": alert.reason,
        }
        if alert.change is not None:
            extra["change"] = alert.change
        logger.info("%s alert", alert.kind.value.capitalize(), extra=extra)
        return True

    def _call_store(self, func: Callable[..., T], *args: Any, deadline: float) -> T:
        """Run ``func`` on the store executor, bounded by the message deadline.

        A call that is already running cannot be cancelled: after a timeout it
        may still complete in the background. Alert inserts are idempotent, so
        such a late write and a redelivered retry still leave one alert.
        """
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise StoreTimeoutError("Message deadline exhausted before store call.")
        future = self.executor.submit(func, *args)
        try:
            return future.result(timeout=remaining)
        except FutureTimeoutError as exc:
            future.cancel()
            raise StoreTimeoutError(
                f"History store call exceeded {self.store_timeout:g}s deadline."
            ) from exc
        except StoreError:
            raise
        except Exception as exc:  # noqa: BLE001 - any backend failure is a store error
            raise StoreError(f"History store call failed: {exc}") from exc

    def _set_state(self, state: ConsumerState) -> None:
        with self._state_lock:
            self._state = state


@lru_cache
def build_default_consumer() -> StreamConsumer:
    """Factory that wires the consumer with configured collaborators."""
    settings = get_settings()
    evaluator = RuleEvaluator(
        window_size=settings.window_size,
        delta_pressure=settings.delta_pressure,
    )
    return StreamConsumer(
        queue=build_default_queue(settings.queue_name),
        store=build_default_store(),
        evaluator=evaluator,
        ack_policy=build_ack_policy(settings.ack_policy),
        store_timeout=settings.store_timeout,
        poll_interval=settings.poll_interval,
    )
