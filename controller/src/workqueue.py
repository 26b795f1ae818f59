from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable

from controller.src.metrics import METRICS


class RateLimitingQueue:
    """Work queue that serializes processing per key.

    Semantics follow the client-go work queue used by Kubernetes
    controllers:

    * a key is held at most once in the ready queue, so a burst of events
      for one policy collapses into a single pass;
    * a key handed out by :meth:`get` is *processing* until :meth:`done` is
      called.  Re-adding it meanwhile only marks it dirty, and it is queued
      again once the current pass finishes.  Two workers therefore never
      process the same key at the same time, while distinct keys are handed
      to workers independently;
    * :meth:`add_after` parks a key until a monotonic due time, keeping the
      earliest due time when a key is scheduled twice;
    * :meth:`add_rate_limited` schedules a key with exponential backoff
      (``base_delay * 2**failures``, capped at ``max_delay``) until
      :meth:`forget` resets its failure count.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.clock = clock

        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._waiting_due: dict[Hashable, float] = {}
        self._failures: dict[Hashable, int] = {}
        self._sequence = itertools.count()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue) + len(self._waiting_due)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def _update_depth(self) -> None:
        METRICS.queue_depth.set(len(self._queue) + len(self._waiting_due))

    def _add_locked(self, key: Hashable) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def add(self, key: Hashable) -> None:
        with self._cond:
            self._waiting_due.pop(key, None)
            self._add_locked(key)
            self._update_depth()

    def add_after(self, key: Hashable, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            due = self.clock() + delay
            current = self._waiting_due.get(key)
            if current is not None and current <= due:
                return
            self._waiting_due[key] = due
            heapq.heappush(self._waiting, (due, next(self._sequence), key))
            self._update_depth()
            self._cond.notify()

    def add_rate_limited(self, key: Hashable) -> float:
        """Schedule *key* after its current backoff delay and return that delay."""
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        delay = min(self.max_delay, self.base_delay * (2**failures))
        self.add_after(key, delay)
        return delay

    def num_requeues(self, key: Hashable) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def forget(self, key: Hashable) -> None:
        """Reset the backoff of *key*."""
        with self._cond:
            self._failures.pop(key, None)

    def discard(self, key: Hashable) -> None:
        """Drop any pending or scheduled work and backoff state for *key*."""
        with self._cond:
            self._failures.pop(key, None)
            self._waiting_due.pop(key, None)
            if key in self._dirty and key not in self._processing:
                self._dirty.discard(key)
                self._queue.remove(key)
            self._update_depth()

    def _promote_due_locked(self) -> float | None:
        """Move due keys into the ready queue; return seconds until the next one."""
        now = self.clock()
        while self._waiting:
            due, _, key = self._waiting[0]
            if self._waiting_due.get(key) != due:
                heapq.heappop(self._waiting)
                continue
            if due > now:
                return due - now
            heapq.heappop(self._waiting)
            del self._waiting_due[key]
            self._add_locked(key)
        return None

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Block until a key is ready and mark it processing.

        Returns ``None`` on shutdown or when *timeout* elapses first.
        """
        give_up_at = None if timeout is None else self.clock() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    return None
                next_due = self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    self._update_depth()
                    return key

                wait_for = next_due
                if give_up_at is not None:
                    remaining = give_up_at - self.clock()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def done(self, key: Hashable) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()
            self._update_depth()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
