from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque

from jetstream_controller.src.metrics import METRICS


class ExponentialBackoff:
    """Per-key exponential backoff: ``base * 2**failures``, capped at ``max_delay``.

    The failure counter doubles as the requeue count the executor compares
    against its retry bound.
    """

    def __init__(self, base_delay_seconds: float = 0.005, max_delay_seconds: float = 1000.0) -> None:
        if base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")
        if max_delay_seconds < base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self._failures: dict[str, int] = {}
        self._lock = threading.Lock()

    def when(self, key: str) -> float:
        with self._lock:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        # Exponent is clamped so huge failure counts cannot overflow the float.
        return min(self.max_delay_seconds, self.base_delay_seconds * 2 ** min(failures, 62))

    def num_requeues(self, key: str) -> int:
        with self._lock:
            return self._failures.get(key, 0)

    def forget(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)


class RateLimitingQueue:
    """Thread-safe work queue of string keys with delayed, rate-limited re-adds.

    Semantics follow the classic controller work queue:

    * A key waiting in the queue is stored once no matter how often it is
      added (``_dirty``).
    * A key handed out by :meth:`get` stays in ``_processing`` until
      :meth:`done`.  Adds during that window only mark it dirty; ``done``
      puts it back, so two workers never hold the same key.
    * Delayed adds wait in a heap ordered by monotonic due-at time and are
      promoted lazily by :meth:`get`.  An earlier due-at for the same key
      supersedes a later one.
    * After :meth:`shut_down`, adds are ignored and every :meth:`get` returns
      ``(None, True)`` at once, so no new work starts.
    """

    def __init__(self, limiter: ExponentialBackoff | None = None, name: str = "streams") -> None:
        self.limiter = limiter or ExponentialBackoff()
        self.name = name
        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._waiting: list[tuple[float, int, str]] = []
        self._waiting_due: dict[str, float] = {}
        self._sequence = itertools.count()
        self._shutting_down = False

    def _update_depth(self) -> None:
        METRICS.queue_depth.labels(queue=self.name).set(len(self._queue))

    def _add_locked(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._update_depth()
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
            due_at = time.monotonic() + delay_seconds
            existing = self._waiting_due.get(key)
            if existing is not None and existing <= due_at:
                return
            self._waiting_due[key] = due_at
            heapq.heappush(self._waiting, (due_at, next(self._sequence), key))
            self._cond.notify()

    def add_rate_limited(self, key: str) -> None:
        self.add_after(key, self.limiter.when(key))

    def num_requeues(self, key: str) -> int:
        return self.limiter.num_requeues(key)

    def forget(self, key: str) -> None:
        self.limiter.forget(key)

    def _promote_due_locked(self, now: float) -> None:
        while self._waiting and self._waiting[0][0] <= now:
            due_at, _, key = heapq.heappop(self._waiting)
            if self._waiting_due.get(key) != due_at:
                continue
            del self._waiting_due[key]
            self._add_locked(key)

    def get(self) -> tuple[str | None, bool]:
        """Block until a key is ready; return ``(key, False)`` or ``(None, True)`` on shutdown."""
        with self._cond:
            while True:
                if self._shutting_down:
                    return None, True
                now = time.monotonic()
                self._promote_due_locked(now)
                if self._queue:
                    break
                timeout = self._waiting[0][0] - now if self._waiting else None
                self._cond.wait(timeout=timeout)

            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            self._update_depth()
            return key, False

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._update_depth()
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)
