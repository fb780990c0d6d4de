from __future__ import annotations

import heapq
import itertools
import random
import time
from collections import deque
from threading import Condition, Lock
from typing import Callable, Generic, Hashable, TypeVar

from .settings import settings

K = TypeVar("K", bound=Hashable)


class BackoffRateLimiter(Generic[K]):
    """Per-key exponential backoff with full jitter and no attempt limit.

    delay = uniform(0, min(cap, base * 2**failures))
    """

    def __init__(
        self,
        base_s: float | None = None,
        cap_s: float | None = None,
        rng: random.Random | None = None,
    ):
        self.base_s = settings.backoff_base_s if base_s is None else base_s
        self.cap_s = settings.backoff_cap_s if cap_s is None else cap_s
        self._rng = rng or random.Random()
        self._lock = Lock()
        self._failures: dict[K, int] = {}

    def ceiling(self, failures: int) -> float:
        # Clamp the exponent; 2**large overflows float math long after cap is hit.
        return min(self.cap_s, self.base_s * (2 ** min(failures, 62)))

    def when(self, key: K) -> float:
        with self._lock:
            n = self._failures.get(key, 0)
            self._failures[key] = n + 1
            ceiling = self.ceiling(n)
            return self._rng.uniform(0, ceiling)

    def forget(self, key: K) -> None:
        with self._lock:
            self._failures.pop(key, None)

    def num_requeues(self, key: K) -> int:
        with self._lock:
            return self._failures.get(key, 0)


class WorkQueue(Generic[K]):
    """Coalescing work queue with an in-flight set and delayed adds.

    - a key added while already pending is not queued twice
    - a key handed out by ``get`` is in flight until ``done``; adds in the
      meantime mark it dirty and it is queued again on ``done``, so one key is
      never processed by two workers at once and the latest state always
      gets a pass
    - ``add_after`` keeps only the earliest deadline per key
    """

    def __init__(
        self,
        rate_limiter: BackoffRateLimiter[K] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.rate_limiter: BackoffRateLimiter[K] = rate_limiter or BackoffRateLimiter()
        self._clock = clock
        self._cond = Condition(Lock())
        self._queue: deque[K] = deque()
        self._dirty: set[K] = set()
        self._processing: set[K] = set()
        self._waiting: list[tuple[float, int, K]] = []
        self._deadlines: dict[K, float] = {}
        self._seq = itertools.count()
        self._shutting_down = False

    def add(self, key: K) -> None:
        with self._cond:
            self._add_locked(key)

    def _add_locked(self, key: K) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def add_after(self, key: K, delay_s: float) -> None:
        if delay_s <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            deadline = self._clock() + delay_s
            existing = self._deadlines.get(key)
            if existing is not None and existing <= deadline:
                return
            self._deadlines[key] = deadline
            heapq.heappush(self._waiting, (deadline, next(self._seq), key))
            # Wake a sleeper so it recomputes its wait against the new deadline.
            self._cond.notify()

    def add_rate_limited(self, key: K) -> float:
        delay = self.rate_limiter.when(key)
        self.add_after(key, delay)
        return delay

    def forget(self, key: K) -> None:
        self.rate_limiter.forget(key)

    def num_requeues(self, key: K) -> int:
        return self.rate_limiter.num_requeues(key)

    def _promote_due_locked(self, now: float) -> None:
        while self._waiting and self._waiting[0][0] <= now:
            deadline, _, key = heapq.heappop(self._waiting)
            if self._deadlines.get(key) != deadline:
                continue  # superseded by an earlier deadline
            del self._deadlines[key]
            self._add_locked(key)

    def get(self, timeout: float | None = None) -> K | None:
        """Block until a key is ready; None after shutdown or on timeout."""
        with self._cond:
            end = None if timeout is None else self._clock() + timeout
            while True:
                now = self._clock()
                self._promote_due_locked(now)
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    return key
                if self._shutting_down:
                    return None
                wait_s: float | None = None
                if self._waiting:
                    wait_s = max(0.0, self._waiting[0][0] - now)
                if end is not None:
                    remaining = end - now
                    if remaining <= 0:
                        return None
                    wait_s = remaining if wait_s is None else min(wait_s, remaining)
                self._cond.wait(wait_s)

    def done(self, key: K) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._cond.notify()

    def in_flight(self) -> set[K]:
        with self._cond:
            return set(self._processing)

    def pending_delayed(self) -> int:
        with self._cond:
            return len(self._deadlines)

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
