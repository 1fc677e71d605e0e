from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from replicator.src.metrics import ReplicatorMetrics
from replicator.src.sync import SyncAborted, SyncEngine, SyncSummary

EVENT_QUEUE_SIZE = 100


class EventKind(str, Enum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class SyncEvent:
    """A change to one source secret.  ``secret`` is None for deletes."""

    kind: EventKind
    name: str
    secret: Any | None = None


@dataclass(frozen=True)
class Unarmed:
    """No debounce window is open."""


@dataclass(frozen=True)
class Armed:
    """A debounce window closes at ``deadline`` (monotonic seconds)."""

    deadline: float


DebounceTimer = Unarmed | Armed

UNARMED = Unarmed()


def timer_fired(timer: DebounceTimer, now: float) -> bool:
    """Only an armed timer can fire."""
    return isinstance(timer, Armed) and now >= timer.deadline


def timer_wait_seconds(timer: DebounceTimer, now: float, poll_seconds: float) -> float:
    """How long the event loop may block before it must look at the timer again.

    An unarmed timer contributes nothing: the loop just polls so it can notice
    shutdown, and only a new event can move it out of the idle state.
    """
    if isinstance(timer, Armed):
        return max(0.0, min(poll_seconds, timer.deadline - now))
    return poll_seconds


class SecretEventDebouncer:
    """Coalesce source secret events and apply them in batches.

    Events are keyed by secret name; a newer event for the same name replaces
    the pending one.  Every event restarts the quiet period, and once
    ``debounce_seconds`` pass with no new event the whole pending map is
    applied through the :class:`SyncEngine` and cleared.

    The queue between the watcher and this loop is bounded: a full queue
    blocks the watcher callback until the loop catches up.  On shutdown the
    queue is drained, the pending batch is applied once, and further
    submissions are refused.
    """

    def __init__(
        self,
        engine: SyncEngine,
        debounce_seconds: float,
        *,
        metrics: ReplicatorMetrics | None = None,
        logger: logging.Logger | None = None,
        queue_size: int = EVENT_QUEUE_SIZE,
        poll_seconds: float = 1.0,
        monotonic_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        if debounce_seconds <= 0:
            raise ValueError("debounce_seconds must be > 0")
        self.engine = engine
        self.debounce_seconds = float(debounce_seconds)
        self.metrics = metrics
        self.logger = logger or logging.getLogger(__name__)
        self.poll_seconds = poll_seconds
        self._monotonic = monotonic_fn
        self.events: queue.Queue[SyncEvent] = queue.Queue(maxsize=queue_size)
        self.pending: dict[str, SyncEvent] = {}
        self.timer: DebounceTimer = UNARMED
        self._closed = threading.Event()
        # Held across the closed check and enqueue, and across close and drain.
        self._close_lock = threading.Lock()
        # Set by shutdown once the grace period is gone; stops the final flush between pairs.
        self.drain_cancel = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def submit(self, event: SyncEvent, stop_event: threading.Event | None = None) -> bool:
        """Enqueue *event*, blocking while the queue is full.

        Returns False if the debouncer has shut down (or *stop_event* is set
        while waiting for room) and the event was not accepted.  An accepted
        event is always seen by the shutdown drain.
        """
        while True:
            with self._close_lock:
                if self._closed.is_set():
                    return False
                try:
                    self.events.put_nowait(event)
                    return True
                except queue.Full:
                    pass
            if stop_event is not None and stop_event.is_set():
                return False
            self.logger.warning(
                "Secret event queue is full; waiting to enqueue %s event for %s",
                event.kind.value,
                event.name,
            )
            self._closed.wait(timeout=self.poll_seconds)

    def offer(self, event: SyncEvent) -> None:
        """Record *event* in the pending batch and restart the quiet period."""
        if event.name in self.pending and self.metrics is not None:
            self.metrics.debounced_events_total.inc()
        self.pending[event.name] = event
        self.timer = Armed(self._monotonic() + self.debounce_seconds)
        if self.metrics is not None:
            self.metrics.pending_events.set(len(self.pending))

    def process_batch(self, cancel: threading.Event | None = None) -> SyncSummary:
        """Apply every pending event and return to the idle state."""
        batch = self.pending
        self.pending = {}
        self.timer = UNARMED
        summary = SyncSummary()
        if self.metrics is not None:
            self.metrics.pending_events.set(0)
        if not batch:
            return summary

        if self.metrics is not None:
            self.metrics.batches_total.inc()
        self.logger.info("Processing batch of %d secret event(s)", len(batch))

        try:
            namespaces = self.engine.list_namespaces()
        except Exception:
            self.logger.exception(
                "Failed to list namespaces; %d secret event(s) left for the next reconciliation",
                len(batch),
            )
            return summary

        remaining = len(batch)
        for event in batch.values():
            try:
                if event.kind is EventKind.DELETE:
                    self.logger.info("Deleting secret %s from all namespaces", event.name)
                    summary.merge(
                        self.engine.remove_from_all_namespaces(
                            event.name, namespaces, cancel=cancel
                        )
                    )
                elif event.secret is not None:
                    self.logger.info(
                        "Syncing secret %s to all namespaces (event: %s)",
                        event.name,
                        event.kind.value,
                    )
                    summary.merge(
                        self.engine.reconcile_all_namespaces(
                            event.secret, namespaces, cancel=cancel
                        )
                    )
            except SyncAborted:
                self.logger.warning(
                    "Batch interrupted; %d secret event(s) not applied", remaining
                )
                summary.aborted = True
                break
            except Exception:
                self.logger.exception(
                    "Failed to apply %s event for secret %s", event.kind.value, event.name
                )
            remaining -= 1
        return summary

    def _drain_queue(self) -> None:
        while True:
            try:
                self.offer(self.events.get_nowait())
            except queue.Empty:
                return

    def run(self, stop_event: threading.Event) -> None:
        self.logger.info(
            "Secret event debouncer started (window=%.1fs)", self.debounce_seconds
        )
        while not stop_event.is_set():
            timeout = timer_wait_seconds(self.timer, self._monotonic(), self.poll_seconds)
            try:
                event = self.events.get(timeout=timeout)
            except queue.Empty:
                event = None

            if event is not None:
                self.offer(event)
                continue

            if timer_fired(self.timer, self._monotonic()):
                self.process_batch(cancel=stop_event)

        self.logger.info("Secret event debouncer shutting down")
        with self._close_lock:
            self._closed.set()
            self._drain_queue()
        if self.pending:
            self.logger.info(
                "Applying %d pending secret event(s) before shutdown", len(self.pending)
            )
        self.process_batch(cancel=self.drain_cancel)
