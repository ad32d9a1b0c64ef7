from __future__ import annotations

import random
import threading
import time
from collections import deque
from collections.abc import Callable

from provisioner.src.metrics import METRICS


class WorkQueue:
    """Deduplicating work queue with per-key serialization and retry backoff.

    A key sits in the queue at most once.  While a worker holds a key it is
    never handed to another worker; adds that arrive in the meantime are
    remembered and the key is queued again on :meth:`done`.  Failed keys
    are re-added through :meth:`add_rate_limited`, which applies per-key
    exponential backoff (``base_delay`` doubling up to ``max_delay``) with
    jitter until :meth:`forget` is called after a success.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 300.0,
        now_fn: Callable[[], float] = time.monotonic,
        jitter: bool = True,
    ) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.now_fn = now_fn
        self.jitter = jitter

        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._delayed: dict[str, float] = {}
        self._failures: dict[str, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _add_locked(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        METRICS.queue_depth.set(len(self._queue))
        self._cond.notify()

    def add(self, key: str) -> None:
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: str, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            due_at = self.now_fn() + delay_seconds
            existing_due = self._delayed.get(key)
            if existing_due is None or due_at < existing_due:
                self._delayed[key] = due_at
            self._cond.notify()

    def backoff_for(self, key: str) -> float:
        """Return the delay the next :meth:`add_rate_limited` call for *key* would use."""
        with self._cond:
            failures = self._failures.get(key, 0)
        return min(self.max_delay, self.base_delay * float(2**failures))

    def add_rate_limited(self, key: str) -> float:
        delay = self.backoff_for(key)
        with self._cond:
            self._failures[key] = self._failures.get(key, 0) + 1
        if self.jitter:
            delay = min(self.max_delay, delay * (0.5 + random.random()))  # noqa: S311
        METRICS.retry_total.inc()
        self.add_after(key, delay)
        return delay

    def forget(self, key: str) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def _promote_due_locked(self) -> float | None:
        """Move due delayed keys into the queue; return seconds until the next one."""
        if not self._delayed:
            return None
        now = self.now_fn()
        for key, due_at in list(self._delayed.items()):
            if due_at <= now:
                del self._delayed[key]
                self._add_locked(key)
        if not self._delayed:
            return None
        return max(0.0, min(self._delayed.values()) - now)

    def get(self, timeout: float | None = None) -> str | None:
        """Block until a key is available and mark it as processing.

        Returns ``None`` on shutdown or when *timeout* elapses first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                next_due = self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    METRICS.queue_depth.set(len(self._queue))
                    return key
                if self._shutting_down:
                    return None

                wait_for = next_due
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                METRICS.queue_depth.set(len(self._queue))
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
