"""In-process reading queue with explicit acknowledgment."""

from __future__ import annotations

import itertools
import time
from collections import deque
from functools import lru_cache
from threading import Condition, Lock
from typing import Deque, Dict, Optional, Tuple

from services.errors import ChannelClosedError


class Delivery:
    """One message handed to a consumer; must be settled exactly once."""

    def __init__(
        self,
        queue: "InMemoryQueue",
        body: bytes,
        delivery_tag: int,
        redelivered: bool = False,
    ) -> None:
        self.body = body
        self.delivery_tag = delivery_tag
        self.redelivered = redelivered
        self._queue = queue
        self._settled = False
        self._lock = Lock()

    @property
    def settled(self) -> bool:
        return self._settled

    def ack(self) -> None:
        self._settle()
        self._queue._on_ack(self)

    def nack(self, requeue: bool = True) -> None:
        self._settle()
        self._queue._on_nack(self, requeue)

    def _settle(self) -> None:
        with self._lock:
            if self._settled:
                raise RuntimeError(f"Delivery {self.delivery_tag} was already settled.")
            self._settled = True


class InMemoryQueue:
    """Ordered FIFO of message bodies with at-least-once redelivery on nack."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._pending: Deque[Tuple[bytes, bool]] = deque()
        self._unacked: Dict[int, Delivery] = {}
        self._tags = itertools.count(1)
        self._closed = False
        self._cond = Condition(Lock())
        self.acked = 0
        self.nacked = 0

    def publish(self, body: bytes) -> None:
        with self._cond:
            if self._closed:
                raise ChannelClosedError(f"Queue {self.name!r} is closed.")
            self._pending.append((body, False))
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[Delivery]:
        """Wait up to ``timeout`` seconds for the next delivery.

        Returns ``None`` when nothing arrived in time and raises
        ``ChannelClosedError`` once the queue is closed.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._closed:
                    raise ChannelClosedError(f"Queue {self.name!r} is closed.")
                if self._pending:
                    body, redelivered = self._pending.popleft()
                    delivery = Delivery(self, body, next(self._tags), redelivered)
                    self._unacked[delivery.delivery_tag] = delivery
                    return delivery
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(remaining)

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed

    def pending_count(self) -> int:
        with self._cond:
            return len(self._pending)

    def unacked_count(self) -> int:
        with self._cond:
            return len(self._unacked)

    def _on_ack(self, delivery: Delivery) -> None:
        with self._cond:
            self._unacked.pop(delivery.delivery_tag, None)
            self.acked += 1

    def _on_nack(self, delivery: Delivery, requeue: bool) -> None:
        with self._cond:
            self._unacked.pop(delivery.delivery_tag, None)
            self.nacked += 1
            if requeue and not self._closed:
                self._pending.appendleft((delivery.body, True))
                self._cond.notify()


@lru_cache
def build_default_queue(name: str = "packets") -> InMemoryQueue:
    return InMemoryQueue(name=name)
