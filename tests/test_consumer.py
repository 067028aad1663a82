import json
import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Iterator, List

import pytest

from datastore.history import InMemoryHistoryStore
from models.records import AlertKind, Reading
from services.consumer import (
    BestEffortAck,
    ConsumerState,
    RedeliverOnStoreError,
    StreamConsumer,
    build_ack_policy,
)
from services.errors import DecodeError, StoreError, StoreTimeoutError
from services.rules import RuleEvaluator
from services.window_cache import WindowCache
from transport.memory_queue import InMemoryQueue

_BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _reading(offset: int, pressure: float = 0.05, temperature: float = 20.0, device_id: int = 1) -> Reading:
    return Reading(
        device_id=device_id,
        timestamp=_BASE + timedelta(seconds=offset),
        pressure=pressure,
        temperature=temperature,
    )


def _payload(reading: Reading) -> bytes:
    return json.dumps(reading.to_document()).encode("utf-8")


class CountingStore(InMemoryHistoryStore):
    def __init__(self) -> None:
        super().__init__(name="test")
        self.find_calls: List[int] = []

    def find_recent(self, device_id, limit):
        self.find_calls.append(device_id)
        return super().find_recent(device_id, limit)


class FailingAlertStore(InMemoryHistoryStore):
    def insert_alert(self, alert) -> None:
        raise StoreError("alerts collection unavailable")


class FirstSustainedWriteFailsStore(InMemoryHistoryStore):
    def __init__(self) -> None:
        super().__init__(name="test")
        self.failed = False

    def insert_alert(self, alert) -> bool:
        if alert.kind is AlertKind.sustained and not self.failed:
            self.failed = True
            raise StoreError("alerts collection unavailable")
        return super().insert_alert(alert)


class BrokenBackendStore(InMemoryHistoryStore):
    def find_recent(self, device_id, limit):
        raise ConnectionError("connection reset")


class StallingStore(InMemoryHistoryStore):
    def __init__(self, release: threading.Event) -> None:
        super().__init__(name="test")
        self._release = release

    def find_recent(self, device_id, limit):
        self._release.wait(timeout=5)
        return []


def _consumer(
    store: InMemoryHistoryStore | None = None,
    queue: InMemoryQueue | None = None,
    window_size: int = 4,
    **kwargs,
) -> StreamConsumer:
    return StreamConsumer(
        queue=queue or InMemoryQueue("test"),
        store=store if store is not None else InMemoryHistoryStore(name="test"),
        evaluator=RuleEvaluator(window_size=window_size, delta_pressure=0.00002),
        poll_interval=0.02,
        **kwargs,
    )


@pytest.fixture
def consumer() -> Iterator[StreamConsumer]:
    service = _consumer()
    yield service
    service.stop()


def _deliver(consumer: StreamConsumer, body: bytes):
    consumer.queue.publish(body)
    delivery = consumer.queue.get(timeout=1)
    assert delivery is not None
    return delivery, consumer.handle_delivery(delivery)


def test_instant_alert_written_for_low_pressure(consumer: StreamConsumer) -> None:
    delivery, outcome = _deliver(consumer, _payload(_reading(0, pressure=0.02)))

    assert outcome.ok
    assert [alert.reason for alert in outcome.alerts] == ["pressure low"]
    stored = consumer.store.list_alerts(device_id=1)
    assert len(stored) == 1
    assert stored[0].kind is AlertKind.instant
    assert stored[0].pressure == 0.02
    assert delivery.settled
    assert consumer.queue.acked == 1


def test_cold_window_with_empty_store_is_not_an_error(consumer: StreamConsumer) -> None:
    for offset in range(3):
        _, outcome = _deliver(consumer, _payload(_reading(offset, pressure=0.05 + offset * 0.001)))
        assert outcome.ok
        assert outcome.alerts == []

    assert consumer.store.list_alerts() == []
    assert consumer.stats.store_fallbacks == 3


def test_sustained_alert_from_warm_cache() -> None:
    service = _consumer()
    try:
        pressures = [0.0500, 0.0500, 0.0500, 0.0501]
        outcomes = [
            _deliver(service, _payload(_reading(offset, pressure=p)))[1]
            for offset, p in enumerate(pressures)
        ]
    finally:
        service.stop()

    assert all(outcome.alerts == [] for outcome in outcomes[:3])
    (alert,) = outcomes[3].alerts
    assert alert.kind is AlertKind.sustained
    assert alert.reason == "rapid pressure increase"
    assert alert.change == pytest.approx(0.0001)
    assert alert.timestamp == _BASE + timedelta(seconds=3)


def test_store_is_not_queried_once_window_is_warm() -> None:
    store = CountingStore()
    service = _consumer(store=store, window_size=4)
    try:
        for offset in range(10):
            _deliver(service, _payload(_reading(offset)))
    finally:
        service.stop()

    assert len(store.find_calls) == 3
    assert service.stats.store_fallbacks == 3


def test_cold_cache_falls_back_to_store_history() -> None:
    store = InMemoryHistoryStore(name="test")
    history = [_reading(i, pressure=p) for i, p in enumerate([0.0500, 0.0500, 0.0500, 0.0499])]
    for reading in (history[2], history[0], history[3], history[1]):
        store.insert_reading(reading)
    service = _consumer(store=store, window_size=4)
    try:
        _, outcome = _deliver(service, _payload(history[3]))
    finally:
        service.stop()

    (alert,) = outcome.alerts
    assert alert.reason == "rapid pressure decrease"
    assert alert.change == pytest.approx(-0.0001)
    assert service.cache.size(1) == 1


def test_both_rules_can_fire_for_one_reading() -> None:
    service = _consumer(window_size=2)
    try:
        _deliver(service, _payload(_reading(0, pressure=0.05)))
        _, outcome = _deliver(service, _payload(_reading(1, pressure=0.08)))
    finally:
        service.stop()

    assert [alert.kind for alert in outcome.alerts] == [AlertKind.instant, AlertKind.sustained]
    assert [alert.reason for alert in outcome.alerts] == ["pressure high", "rapid pressure increase"]
    assert len(service.store.list_alerts()) == 2


@pytest.mark.parametrize(
    "body",
    [
        b"not json",
        b"\xff\xfe",
        b"[1, 2, 3]",
        b'{"device_id": 1, "pressure": 0.05, "temperature": 20.0}',
        b'{"device_id": "1", "timestamp": "2024-01-01T00:00:00Z", "pressure": 0.05, "temperature": 20.0}',
        b'{"device_id": 1, "timestamp": "yesterday", "pressure": 0.05, "temperature": 20.0}',
        b'{"device_id": 1, "timestamp": "2024-01-01T00:00:00", "pressure": 0.05, "temperature": 20.0}',
        b'{"device_id": 1, "timestamp": "2024-01-01T00:00:00Z", "pressure": "high", "temperature": 20.0}',
    ],
)
def test_decode_errors_are_acked_without_side_effects(consumer: StreamConsumer, body: bytes) -> None:
    delivery, outcome = _deliver(consumer, body)

    assert isinstance(outcome.error, DecodeError)
    assert outcome.reading is None
    assert delivery.settled
    assert consumer.queue.acked == 1
    assert consumer.cache.devices() == []
    assert consumer.store.list_alerts() == []
    assert consumer.stats.decode_errors == 1


def test_store_error_is_logged_and_message_still_acked(caplog) -> None:
    service = _consumer(store=FailingAlertStore(name="test"))
    try:
        with caplog.at_level(logging.WARNING):
            delivery, outcome = _deliver(service, _payload(_reading(0, temperature=45.0)))
    finally:
        service.stop()

    assert isinstance(outcome.error, StoreError)
    assert outcome.alerts == []
    assert delivery.settled
    assert service.queue.acked == 1
    assert service.cache.size(1) == 1
    assert service.stats.store_errors == 1

    records = [record for record in caplog.records if record.name == "services.consumer"]
    assert any("History store failure" in record.getMessage() for record in records)
    assert any(getattr(record, "device_id", None) == 1 for record in records)


def test_backend_exceptions_become_store_errors() -> None:
    service = _consumer(store=BrokenBackendStore(name="test"))
    try:
        _, outcome = _deliver(service, _payload(_reading(0)))
    finally:
        service.stop()

    assert isinstance(outcome.error, StoreError)
    assert "connection reset" in str(outcome.error)


def test_stalled_store_times_out_within_deadline() -> None:
    release = threading.Event()
    service = _consumer(store=StallingStore(release), store_timeout=0.1)
    try:
        start = time.monotonic()
        delivery, outcome = _deliver(service, _payload(_reading(0)))
        elapsed = time.monotonic() - start
    finally:
        release.set()
        service.stop()

    assert isinstance(outcome.error, StoreTimeoutError)
    assert elapsed < 1.0
    assert delivery.settled
    assert service.queue.acked == 1


def test_redeliver_policy_requeues_on_store_error() -> None:
    service = _consumer(
        store=FailingAlertStore(name="test"),
        ack_policy=RedeliverOnStoreError(),
    )
    try:
        delivery, outcome = _deliver(service, _payload(_reading(0, pressure=0.01)))
        redelivery = service.queue.get(timeout=0.5)
    finally:
        service.stop()

    assert isinstance(outcome.error, StoreError)
    assert delivery.settled
    assert service.queue.nacked == 1
    assert service.queue.acked == 0
    assert service.stats.nacked == 1
    assert redelivery is not None
    assert redelivery.redelivered is True
    assert redelivery.body == delivery.body


def test_redelivered_message_recovers_only_the_failed_alert() -> None:
    service = _consumer(
        store=FirstSustainedWriteFailsStore(),
        ack_policy=RedeliverOnStoreError(),
        window_size=2,
    )
    first, second = _reading(0, pressure=0.05), _reading(1, pressure=0.08)
    try:
        _deliver(service, _payload(first))
        _, failed = _deliver(service, _payload(second))
        redelivery = service.queue.get(timeout=0.5)
        assert redelivery is not None
        retried = service.handle_delivery(redelivery)
    finally:
        service.stop()

    assert isinstance(failed.error, StoreError)
    assert [alert.kind for alert in failed.alerts] == [AlertKind.instant]
    assert retried.ok
    assert [alert.kind for alert in retried.alerts] == [AlertKind.sustained]
    assert retried.alerts[0].change == pytest.approx(0.03)

    assert service.cache.snapshot(1).readings == (first, second)
    stored = service.store.list_alerts(device_id=1)
    assert sorted(alert.kind.value for alert in stored) == ["instant", "sustained"]
    assert service.stats.instant_alerts == 1
    assert service.stats.sustained_alerts == 1
    assert service.queue.nacked == 1
    assert service.queue.acked == 2


def test_redelivered_reading_missing_from_window_is_appended() -> None:
    service = _consumer(ack_policy=RedeliverOnStoreError(), window_size=2)
    try:
        outcome = service.process_message(_payload(_reading(0)), redelivered=True)
    finally:
        service.stop()

    assert outcome.ok
    assert service.cache.size(1) == 1


def test_redeliver_policy_acks_decode_errors() -> None:
    service = _consumer(ack_policy=RedeliverOnStoreError())
    try:
        _deliver(service, b"{broken")
    finally:
        service.stop()

    assert service.queue.acked == 1
    assert service.queue.pending_count() == 0


def test_build_ack_policy_by_name() -> None:
    assert isinstance(build_ack_policy("best_effort"), BestEffortAck)
    assert isinstance(build_ack_policy("redeliver"), RedeliverOnStoreError)
    with pytest.raises(ValueError):
        build_ack_policy("exactly_once")


def _wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    pytest.fail("Condition not met before timeout")


def test_run_loop_processes_queue_until_stopped() -> None:
    service = _consumer(window_size=2)
    assert service.state is ConsumerState.idle

    service.start()
    _wait_for(lambda: service.state is ConsumerState.consuming)
    for offset, pressure in enumerate([0.05, 0.05, 0.02]):
        service.queue.publish(_payload(_reading(offset, pressure=pressure)))
    _wait_for(lambda: service.queue.acked == 3)

    service.stop(timeout=2)

    assert service.state is ConsumerState.stopped
    assert service.stats.received == 3
    assert service.stats.processed == 3
    reasons = sorted(alert.reason for alert in service.store.list_alerts())
    assert reasons == ["pressure low", "rapid pressure decrease"]


def test_run_loop_stops_when_channel_closes(caplog) -> None:
    service = _consumer()
    with caplog.at_level(logging.ERROR):
        service.start()
        _wait_for(lambda: service.state is ConsumerState.consuming)
        service.queue.close()
        _wait_for(lambda: service.state is ConsumerState.stopped)
    service.stop(timeout=1)

    assert any("channel closed" in record.getMessage() for record in caplog.records)


def test_no_messages_processed_after_stop() -> None:
    service = _consumer()
    service.stop()
    service.queue.publish(_payload(_reading(0)))

    service.run()

    assert service.state is ConsumerState.stopped
    assert service.stats.received == 0
    assert service.queue.pending_count() == 1


def test_consumers_can_share_a_window_cache() -> None:
    queue = InMemoryQueue("shared")
    store = InMemoryHistoryStore(name="test")
    cache = WindowCache(capacity=3)
    first = _consumer(store=store, queue=queue, window_size=3, cache=cache)
    second = _consumer(store=store, queue=queue, window_size=3, cache=cache)

    first.start()
    second.start()
    try:
        for offset in range(30):
            queue.publish(_payload(_reading(offset, device_id=offset % 3 + 1)))
        _wait_for(lambda: queue.acked == 30)
    finally:
        first.stop(timeout=2)
        second.stop(timeout=2)

    assert first.stats.received + second.stats.received == 30
    assert cache.devices() == [1, 2, 3]
    assert all(cache.size(device) == 3 for device in (1, 2, 3))
