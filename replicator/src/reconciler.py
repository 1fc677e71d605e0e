from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from replicator.src.metrics import ReplicatorMetrics
from replicator.src.sync import SyncEngine, SyncSummary


class PeriodicReconciler:
    """Run a full sweep immediately and then once per interval.

    This is the consistency backstop for anything the event path misses,
    for example a restart while a debounce window was still open.  With
    ``prune_orphans`` enabled each sweep is followed by deletion of owned
    replicas whose source secret is gone.
    """

    def __init__(
        self,
        engine: SyncEngine,
        interval_seconds: float,
        *,
        prune_orphans: bool = False,
        metrics: ReplicatorMetrics | None = None,
        ready: threading.Event | None = None,
        logger: logging.Logger | None = None,
        monotonic_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.prune_orphans = prune_orphans
        self.metrics = metrics
        self.ready = ready or threading.Event()
        self.logger = logger or logging.getLogger(__name__)
        self._monotonic = monotonic_fn

    def _record(self, result: str) -> None:
        if self.metrics is not None:
            self.metrics.sweeps_total.labels(result=result).inc()

    def run_once(self, cancel: threading.Event | None = None) -> SyncSummary | None:
        """Run one sweep; returns None when the sweep could not start."""
        try:
            summary = self.engine.reconcile_full(cancel=cancel)
        except Exception:
            self.logger.exception("Error syncing secrets")
            self._record("error")
            return None

        if self.prune_orphans and not summary.aborted:
            try:
                summary.merge(self.engine.prune_orphans(cancel=cancel))
            except Exception:
                self.logger.exception("Error pruning orphaned replicas")

        if summary.aborted:
            self._record("aborted")
        elif summary.failed:
            self._record("partial")
        else:
            self._record("ok")
        self.ready.set()
        return summary

    def run(self, stop_event: threading.Event) -> None:
        self.logger.info("Performing initial secret sync on startup")
        next_due = self._monotonic() + self.interval_seconds
        self.run_once(cancel=stop_event)

        while not stop_event.wait(timeout=max(0.0, next_due - self._monotonic())):
            next_due += self.interval_seconds
            self.run_once(cancel=stop_event)
            # Sweeps longer than the interval skip ticks instead of queueing them.
            now = self._monotonic()
            if next_due < now:
                next_due = now + self.interval_seconds
        self.logger.info("Periodic sync shutting down")
