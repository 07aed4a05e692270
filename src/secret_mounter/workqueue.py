"""Deduplicating, rate-limited work queue.

This module provides the queue that sits between the informer and the
workers. A key is held at most once while pending, is never handed to two
workers at the same time, and a key re-added while it is being processed
is queued again once the current pass is marked done.

Retry timing lives here, not in the workers: a failed key goes back in
through ``add_rate_limited`` and the rate limiter decides when it becomes
available again.
"""

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable
from typing import Protocol

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class RateLimiter(Protocol):
    """Decides how long a key waits before it is retried."""

    def when(self, item: Hashable) -> float: ...

    def forget(self, item: Hashable) -> None: ...

    def num_requeues(self, item: Hashable) -> int: ...


class ItemExponentialFailureRateLimiter:
    """Per-key exponential backoff: ``base_delay * 2**failures``, capped at ``max_delay``."""

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1
        # 2**63 overflows any useful delay long before it matters.
        if exponent > 62:
            return self.max_delay
        return min(self.base_delay * 2**exponent, self.max_delay)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class BucketRateLimiter:
    """Overall token bucket shared by every key.

    Each call reserves one token; once the bucket is drained, the returned
    delay is the time until the reserved token is refilled.
    """

    def __init__(self, qps: float = 10.0, burst: int = 100, clock: Clock = time.monotonic) -> None:
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            now = self._clock()
            self._tokens = min(float(self.burst), self._tokens + (now - self._last) * self.qps)
            self._last = now
            self._tokens -= 1
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def forget(self, item: Hashable) -> None:
        pass

    def num_requeues(self, item: Hashable) -> int:
        return 0


class MaxOfRateLimiter:
    """Combines rate limiters by taking the longest delay."""

    def __init__(self, *limiters: RateLimiter) -> None:
        self.limiters = limiters

    def when(self, item: Hashable) -> float:
        return max(limiter.when(item) for limiter in self.limiters)

    def forget(self, item: Hashable) -> None:
        for limiter in self.limiters:
            limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return max(limiter.num_requeues(item) for limiter in self.limiters)


def default_controller_rate_limiter() -> RateLimiter:
    """Per-key exponential backoff combined with an overall 10 qps / 100 burst bucket."""
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay=0.005, max_delay=1000.0),
        BucketRateLimiter(qps=10.0, burst=100),
    )


class WorkQueue:
    """Deduplicating FIFO of keys with in-flight tracking.

    A key lives in ``_dirty`` while it still needs processing and in
    ``_processing`` while a worker holds it. Only keys that are dirty and
    not processing sit in ``_queue``.
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._cond = threading.Condition()
        self._shutting_down = False

    def add(self, item: Hashable) -> None:
        """Queue a key unless it is already pending."""
        with self._cond:
            if self._shutting_down or item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._cond.notify()

    def get(self, timeout: float | None = None) -> tuple[Hashable | None, bool]:
        """Block until a key is available.

        Args:
            timeout: Seconds to wait. None waits until a key arrives or
                the queue shuts down.

        Returns:
            ``(key, False)`` for a key to process, ``(None, True)`` once the
            queue is shutting down (pending keys are abandoned), or
            ``(None, False)`` on timeout.

        """
        with self._cond:
            if not self._cond.wait_for(lambda: self._queue or self._shutting_down, timeout=timeout):
                return None, False
            if self._shutting_down:
                return None, True
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item: Hashable) -> None:
        """Mark a key as processed, re-queueing it if it was added meanwhile."""
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def shut_down(self) -> None:
        """Stop accepting keys and release every blocked ``get``."""
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

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, pending={len(self)})"


class DelayingQueue(WorkQueue):
    """WorkQueue that can add a key after a delay.

    Delayed keys wait on a heap served by one daemon thread. Adding a key
    that is already waiting only moves its ready time earlier.
    """

    def __init__(self, name: str = "", clock: Clock = time.monotonic) -> None:
        super().__init__(name=name)
        self._clock = clock
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._ready_at: dict[Hashable, float] = {}
        self._sequence = itertools.count()
        self._delay_cond = threading.Condition()
        self._delay_thread: threading.Thread | None = None

    def add_after(self, item: Hashable, delay: float) -> None:
        """Queue a key once ``delay`` seconds have passed."""
        if self.shutting_down:
            return
        if delay <= 0:
            self.add(item)
            return

        with self._delay_cond:
            ready_at = self._clock() + delay
            current = self._ready_at.get(item)
            if current is not None and current <= ready_at:
                return
            self._ready_at[item] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._sequence), item))
            self._ensure_delay_thread()
            self._delay_cond.notify()

    def _ensure_delay_thread(self) -> None:
        if self._delay_thread is None:
            self._delay_thread = threading.Thread(
                target=self._wait_loop, name=f"{self.name or 'workqueue'}-delay", daemon=True
            )
            self._delay_thread.start()

    def _pop_ready(self) -> tuple[list[Hashable], float | None]:
        """Pop every due key; return them with the wait until the next one."""
        ready: list[Hashable] = []
        now = self._clock()
        while self._waiting:
            ready_at, _, item = self._waiting[0]
            if self._ready_at.get(item) != ready_at:
                # Superseded by an earlier add_after of the same key.
                heapq.heappop(self._waiting)
                continue
            if ready_at > now:
                return ready, ready_at - now
            heapq.heappop(self._waiting)
            del self._ready_at[item]
            ready.append(item)
        return ready, None

    def _wait_loop(self) -> None:
        while not self.shutting_down:
            with self._delay_cond:
                ready, wait = self._pop_ready()
                if not ready and not self.shutting_down:
                    self._delay_cond.wait(timeout=wait)
            for item in ready:
                self.add(item)

    def shut_down(self) -> None:
        super().shut_down()
        with self._delay_cond:
            self._delay_cond.notify_all()


class RateLimitingQueue(DelayingQueue):
    """DelayingQueue whose retries are paced by a RateLimiter."""

    def __init__(
        self,
        name: str = "",
        rate_limiter: RateLimiter | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        super().__init__(name=name, clock=clock)
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()

    def add_rate_limited(self, item: Hashable) -> None:
        """Queue a key after the delay chosen by the rate limiter."""
        delay = self.rate_limiter.when(item)
        logger.debug("Requeueing %s in %.3fs", item, delay)
        self.add_after(item, delay)

    def forget(self, item: Hashable) -> None:
        """Clear retry history for a key."""
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)
