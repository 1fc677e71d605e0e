from __future__ import annotations

import threading
import time
from collections.abc import Callable

from replicator.src.metrics import ReplicatorMetrics


class TokenBucket:
    """Thread-safe token bucket shared by every code path that talks to the API.

    Tokens refill continuously at ``rate`` per second up to ``capacity``.  A
    single instance is handed to the sync engine so the aggregate call rate is
    bounded no matter whether the debouncer, the namespace watcher or the
    periodic sweep triggered the work.
    """

    def __init__(
        self,
        rate: float,
        capacity: int | None = None,
        *,
        metrics: ReplicatorMetrics | None = None,
        monotonic_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be > 0")
        if capacity is None:
            capacity = max(1, int(rate))
        if capacity < 1:
            raise ValueError("capacity must be >= 1")

        self.rate = float(rate)
        self.capacity = capacity
        self.metrics = metrics
        self._monotonic = monotonic_fn
        self._tokens = float(capacity)
        self._updated = monotonic_fn()
        self._lock = threading.Lock()

    def _reserve(self) -> float:
        """Take a token if one is available.

        Returns ``0.0`` on success, otherwise the number of seconds until the
        next token is due.
        """
        with self._lock:
            now = self._monotonic()
            elapsed = max(0.0, now - self._updated)
            self._tokens = min(float(self.capacity), self._tokens + elapsed * self.rate)
            self._updated = now
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return 0.0
            return (1.0 - self._tokens) / self.rate

    def try_acquire(self) -> bool:
        return self._reserve() == 0.0

    def acquire(self, cancel: threading.Event | None = None) -> bool:
        """Block until a token is available.

        Returns False without taking a token when *cancel* is (or becomes) set
        while waiting; callers abandon the rest of their batch in that case.
        """
        waited = 0.0
        try:
            while True:
                if cancel is not None and cancel.is_set():
                    return False
                delay = self._reserve()
                if delay <= 0.0:
                    return True
                if cancel is None:
                    time.sleep(delay)
                elif cancel.wait(timeout=delay):
                    return False
                waited += delay
        finally:
            if waited and self.metrics is not None:
                self.metrics.rate_limit_wait_seconds_total.inc(waited)
