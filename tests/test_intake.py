import threading
import time

import pytest

from harvester.intake import (
    CancellationCoordinator,
    CancellationToken,
    ConcurrencyLimiter,
    IntakeClosed,
    IntakeFull,
    IntakeQueue,
    default_max_in_flight,
)


def test_queue_is_fifo_and_bounded():
    q: IntakeQueue[int] = IntakeQueue(2)
    q.put_nowait(1)
    q.put_nowait(2)
    with pytest.raises(IntakeFull):
        q.put_nowait(3)
    assert len(q) == 2
    assert q.get() == 1
    assert q.get() == 2
    assert q.get(timeout=0.01) is None


def test_put_blocks_until_space_frees():
    q: IntakeQueue[int] = IntakeQueue(1)
    q.put(1)
    done = threading.Event()

    def _producer():
        q.put(2)
        done.set()

    t = threading.Thread(target=_producer)
    t.start()
    time.sleep(0.1)
    assert not done.is_set()
    assert q.get() == 1
    t.join(timeout=2)
    assert done.is_set()
    assert q.get() == 2


def test_blocked_put_gives_up_when_cancelled():
    q: IntakeQueue[int] = IntakeQueue(1)
    q.put(1)
    token = CancellationToken()
    errors: list[BaseException] = []

    def _producer():
        try:
            q.put(2, token=token)
        except IntakeClosed as e:
            errors.append(e)

    t = threading.Thread(target=_producer)
    t.start()
    token.cancel()
    t.join(timeout=2)
    assert not t.is_alive()
    assert len(errors) == 1


def test_drain_and_close():
    q: IntakeQueue[str] = IntakeQueue(4)
    for item in "abc":
        q.put(item)
    assert q.drain() == ["a", "b", "c"]
    assert q.drain() == []
    q.close()
    assert q.closed
    with pytest.raises(IntakeClosed):
        q.put("d")
    with pytest.raises(IntakeClosed):
        q.put_nowait("d")


def test_limiter_counts_in_flight():
    limiter = ConcurrencyLimiter(2)
    assert limiter.acquire(timeout=0.1)
    assert limiter.acquire(timeout=0.1)
    assert limiter.in_flight == 2
    assert not limiter.acquire(timeout=0.05)
    limiter.release()
    assert limiter.in_flight == 1
    assert limiter.acquire(timeout=0.1)


def test_limiter_wait_aborts_on_cancel():
    limiter = ConcurrencyLimiter(1)
    limiter.acquire()
    token = CancellationToken()
    timer = threading.Timer(0.05, token.cancel)
    timer.start()
    assert limiter.acquire_unless_cancelled(token) is False
    timer.join()


def test_limiter_rejects_zero_capacity():
    with pytest.raises(ValueError):
        ConcurrencyLimiter(0)
    assert 1 <= default_max_in_flight() <= 32


def test_coordinator_tracks_drain_state():
    coordinator = CancellationCoordinator()
    assert coordinator.drained()
    coordinator.track(1)
    coordinator.track(2)
    assert not coordinator.drained()
    coordinator.finished(1)
    coordinator.finished(2)
    assert coordinator.drained()
    assert not coordinator.is_cancelled()
    coordinator.token.cancel()
    assert coordinator.is_cancelled()
