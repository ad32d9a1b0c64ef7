from __future__ import annotations

import threading

from provisioner.src.workqueue import WorkQueue


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_duplicate_adds_collapse() -> None:
    queue = WorkQueue()
    queue.add("a")
    queue.add("a")
    queue.add("b")

    assert len(queue) == 2
    assert queue.get(timeout=0) == "a"
    assert queue.get(timeout=0) == "b"
    assert queue.get(timeout=0) is None


def test_key_is_not_handed_out_while_processing() -> None:
    queue = WorkQueue()
    queue.add("a")
    assert queue.get(timeout=0) == "a"

    queue.add("a")
    assert queue.get(timeout=0) is None

    queue.done("a")
    assert queue.get(timeout=0) == "a"


def test_done_without_new_add_drops_key() -> None:
    queue = WorkQueue()
    queue.add("a")
    queue.get(timeout=0)
    queue.done("a")

    assert len(queue) == 0


def test_add_after_waits_for_due_time() -> None:
    clock = FakeClock()
    queue = WorkQueue(now_fn=clock)
    queue.add_after("a", 5.0)

    assert queue.get(timeout=0) is None
    clock.now += 5.0
    assert queue.get(timeout=0) == "a"


def test_rate_limited_backoff_doubles_and_caps() -> None:
    clock = FakeClock()
    queue = WorkQueue(base_delay=1.0, max_delay=4.0, now_fn=clock, jitter=False)

    delays = [queue.add_rate_limited("a") for _ in range(4)]

    assert delays == [1.0, 2.0, 4.0, 4.0]
    assert queue.num_requeues("a") == 4


def test_forget_resets_backoff() -> None:
    queue = WorkQueue(jitter=False)
    queue.add_rate_limited("a")
    queue.add_rate_limited("a")

    queue.forget("a")

    assert queue.num_requeues("a") == 0
    assert queue.backoff_for("a") == 1.0


def test_jitter_stays_within_bounds() -> None:
    queue = WorkQueue(base_delay=2.0, max_delay=100.0)

    delay = queue.add_rate_limited("a")

    assert 1.0 <= delay <= 3.0


def test_shut_down_releases_blocked_getters() -> None:
    queue = WorkQueue()
    results: list[str | None] = []

    worker = threading.Thread(target=lambda: results.append(queue.get()))
    worker.start()
    queue.shut_down()
    worker.join(timeout=2)

    assert not worker.is_alive()
    assert results == [None]
    queue.add("late")
    assert len(queue) == 0


def test_concurrent_workers_never_share_a_key() -> None:
    queue = WorkQueue()
    active: set[str] = set()
    overlaps: list[str] = []
    lock = threading.Lock()

    def worker() -> None:
        while True:
            key = queue.get(timeout=0.2)
            if key is None:
                return
            with lock:
                if key in active:
                    overlaps.append(key)
                active.add(key)
            with lock:
                active.discard(key)
            queue.done(key)

    for _ in range(50):
        queue.add("same")
    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for _ in range(50):
        queue.add("same")
    for thread in threads:
        thread.join(timeout=5)

    assert overlaps == []
