"""Bounded intake, concurrency limiting and cooperative cancellation.

Nothing here schedules work; the runner's dispatcher thread moves jobs from
the `IntakeQueue` through the `ConcurrencyLimiter` into the job pool.
"""

from __future__ import annotations

import os
import queue
import threading
from typing import Generic, TypeVar

T = TypeVar("T")

DEFAULT_INTAKE_CAPACITY = 256
DEFAULT_POLL_S = 0.05


def default_max_in_flight() -> int:
    return min(32, 4 * (os.cpu_count() or 1))


class IntakeFull(Exception):
    pass


class IntakeClosed(Exception):
    pass


class CancellationToken:
    """Write-once, thread-safe stop signal.

    Tasks check `is_cancelled()` at their own safe points; nothing is
    interrupted.
    """

    def __init__(self) -> None:
        self._is_cancelled = threading.Event()

    def cancel(self) -> None:
        self._is_cancelled.set()

    def is_cancelled(self) -> bool:
        return self._is_cancelled.is_set()


class IntakeQueue(Generic[T]):
    """Bounded FIFO between the effect runner and the dispatcher.

    `put_nowait` is the non-blocking path used on the driver thread; `put`
    blocks and is only called from the runner's feeder thread.
    """

    def __init__(self, capacity: int = DEFAULT_INTAKE_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._q: queue.Queue[T] = queue.Queue(maxsize=capacity)
        self._closed = threading.Event()
        self.capacity = capacity

    def __len__(self) -> int:
        return self._q.qsize()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def put(
        self,
        item: T,
        *,
        token: CancellationToken | None = None,
        poll_s: float = DEFAULT_POLL_S,
    ) -> None:
        """Block while the queue is full.

        Raises IntakeClosed when the queue is closed or `token` is cancelled
        before space frees up.
        """

        while True:
            if self.closed or (token is not None and token.is_cancelled()):
                raise IntakeClosed("Intake is closed")
            try:
                self._q.put(item, timeout=poll_s)
                return
            except queue.Full:
                continue

    def put_nowait(self, item: T) -> None:
        if self.closed:
            raise IntakeClosed("Intake is closed")
        try:
            self._q.put_nowait(item)
        except queue.Full:
            raise IntakeFull(f"Intake is at capacity ({self.capacity})") from None

    def get(self, timeout: float = DEFAULT_POLL_S) -> T | None:
        """Next item, or None if nothing arrived within `timeout`."""

        try:
            return self._q.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[T]:
        items: list[T] = []
        while True:
            try:
                items.append(self._q.get_nowait())
            except queue.Empty:
                return items

    def close(self) -> None:
        self._closed.set()


class ConcurrencyLimiter:
    def __init__(self, max_in_flight: int | None = None) -> None:
        capacity = max_in_flight if max_in_flight is not None else default_max_in_flight()
        if capacity < 1:
            raise ValueError("max_in_flight must be >= 1")
        self.capacity = capacity
        self._sem = threading.BoundedSemaphore(capacity)
        self._lock = threading.Lock()
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    def acquire(self, timeout: float | None = None) -> bool:
        ok = self._sem.acquire(timeout=timeout) if timeout is not None else self._sem.acquire()
        if ok:
            with self._lock:
                self._in_flight += 1
        return ok

    def acquire_unless_cancelled(
        self,
        token: CancellationToken,
        *,
        poll_s: float = DEFAULT_POLL_S,
    ) -> bool:
        """Wait for a slot; give up (returning False) once `token` is cancelled."""

        while not token.is_cancelled():
            if self.acquire(timeout=poll_s):
                return True
        return False

    def release(self) -> None:
        with self._lock:
            self._in_flight -= 1
        self._sem.release()


class CancellationCoordinator:
    """Knows whether a stop was requested and whether every tracked job ended."""

    def __init__(self, token: CancellationToken | None = None) -> None:
        self.token = token or CancellationToken()
        self._lock = threading.Lock()
        self._outstanding: set[int] = set()

    def track(self, job_id: int) -> None:
        with self._lock:
            self._outstanding.add(job_id)

    def finished(self, job_id: int) -> None:
        with self._lock:
            self._outstanding.discard(job_id)

    def is_cancelled(self) -> bool:
        return self.token.is_cancelled()

    def drained(self) -> bool:
        with self._lock:
            return not self._outstanding
