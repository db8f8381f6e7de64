from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable

from bundlesync.src.metrics import METRICS


class WorkQueue:
    """Coalescing work queue keyed by namespace name.

    Guarantees:

    - A key waits in the queue at most once; adding a key that is already
      queued is a no-op.
    - A key handed out by :meth:`get` is *processing* until :meth:`done` is
      called. Adding it again meanwhile marks it dirty, and ``done`` puts it
      back on the queue, so at most one worker ever holds a given key.
    - :meth:`add_rate_limited` requeues a key after a per-key exponential
      backoff (``base_delay * 2**(n-1)`` capped at ``max_delay``) until
      :meth:`forget` resets the counter.
    - After :meth:`shutdown` nothing is accepted or handed out; ``get``
      returns ``None`` so workers drain and exit.
    """

    def __init__(
        self,
        base_delay: float = 0.5,
        max_delay: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._clock = clock

        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._delayed: list[tuple[float, int, str]] = []
        self._sequence = itertools.count()
        self._failures: dict[str, int] = {}
        self._shutting_down = False

    def _enqueue_locked(self, key: str) -> bool:
        if key in self._dirty:
            return False
        self._dirty.add(key)
        if key in self._processing:
            return True
        self._queue.append(key)
        METRICS.queue_depth.set(len(self._queue))
        self._cond.notify()
        return True

    def _promote_due_locked(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, key = heapq.heappop(self._delayed)
            self._enqueue_locked(key)

    def add(self, key: str) -> bool:
        """Queue *key*. Returns False when it was coalesced or the queue is shut down."""
        with self._cond:
            if self._shutting_down:
                return False
            return self._enqueue_locked(key)

    def add_after(self, key: str, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            due_at = self._clock() + delay_seconds
            heapq.heappush(self._delayed, (due_at, next(self._sequence), key))
            self._cond.notify_all()

    def add_rate_limited(self, key: str) -> float:
        """Requeue *key* after its next backoff delay and return that delay."""
        with self._cond:
            attempt = self._failures.get(key, 0) + 1
            self._failures[key] = attempt
        delay_seconds = min(self.max_delay, self.base_delay * float(2 ** (attempt - 1)))
        self.add_after(key, delay_seconds)
        return delay_seconds

    def forget(self, key: str) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def drop(self, key: str) -> None:
        """Discard every pending, dirty and delayed entry for *key* and reset its backoff.

        A worker already holding *key* finishes, but ``done`` will not requeue it.
        """
        with self._cond:
            self._failures.pop(key, None)
            self._dirty.discard(key)
            if key in self._queue:
                self._queue.remove(key)
                METRICS.queue_depth.set(len(self._queue))
            delayed = [entry for entry in self._delayed if entry[2] != key]
            if len(delayed) != len(self._delayed):
                heapq.heapify(delayed)
                self._delayed = delayed

    def num_requeues(self, key: str) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def get(self, timeout: float | None = None) -> str | None:
        """Block until a key is available and mark it processing.

        Returns ``None`` on shutdown or when *timeout* elapses first.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    return None
                self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    METRICS.queue_depth.set(len(self._queue))
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key

                now = self._clock()
                wait_for: float | None = None
                if self._delayed:
                    wait_for = max(0.0, self._delayed[0][0] - now)
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if self._shutting_down:
                return
            if key in self._dirty:
                self._queue.append(key)
                METRICS.queue_depth.set(len(self._queue))
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._queue.clear()
            self._dirty.clear()
            self._delayed.clear()
            METRICS.queue_depth.set(0)
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)
