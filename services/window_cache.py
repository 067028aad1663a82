"""Per-device bounded windows of recent readings."""

from __future__ import annotations

from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from threading import Condition, Lock
from typing import Deque, Dict, Iterator, List, Optional, Tuple

from models.records import Reading


class ReadWriteLock:
    """Many concurrent readers, one exclusive writer.

    Writers are preferred: once a writer is waiting, new readers queue behind it.
    """

    def __init__(self) -> None:
        self._cond = Condition(Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass(frozen=True)
class WindowSnapshot:
    """Either a warm window of readings or a cold marker."""

    readings: Optional[Tuple[Reading, ...]] = None

    @property
    def warm(self) -> bool:
        return self.readings is not None

    @classmethod
    def cold(cls) -> "WindowSnapshot":
        return cls(readings=None)


class WindowCache:
    """Keeps the last ``capacity`` readings for every device, oldest first."""

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("Window capacity must be a positive integer.")
        self.capacity = capacity
        self._windows: Dict[int, Deque[Reading]] = {}
        self._lock = ReadWriteLock()

    def append(self, reading: Reading) -> None:
        with self._lock.write():
            # deque(maxlen=...) drops the leftmost entry on overflow
            self._window_for(reading.device_id).append(reading)

    def append_once(self, reading: Reading) -> bool:
        """Append unless an identical reading is already in the window."""
        with self._lock.write():
            window = self._window_for(reading.device_id)
            if reading in window:
                return False
            window.append(reading)
            return True

    def snapshot(self, device_id: int) -> WindowSnapshot:
        with self._lock.read():
            window = self._windows.get(device_id)
            if window is None or len(window) < self.capacity:
                return WindowSnapshot.cold()
            return WindowSnapshot(readings=tuple(window))

    def size(self, device_id: int) -> int:
        with self._lock.read():
            window = self._windows.get(device_id)
            return len(window) if window is not None else 0

    def devices(self) -> List[int]:
        with self._lock.read():
            return sorted(self._windows)

    def _window_for(self, device_id: int) -> Deque[Reading]:
        window = self._windows.get(device_id)
        if window is None:
            window = deque(maxlen=self.capacity)
            self._windows[device_id] = window
        return window
