from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from kubernetes.client import CoreV1Api

from replicator.src.config import DEFAULT_RATE_LIMIT
from replicator.src.debounce import SecretEventDebouncer
from replicator.src.filters import NamespacePolicy
from replicator.src.informer import CacheSyncError
from replicator.src.metrics import ReplicatorMetrics
from replicator.src.ratelimit import TokenBucket
from replicator.src.reconciler import PeriodicReconciler
from replicator.src.status import SyncStatusUpdater
from replicator.src.sync import SyncEngine, SyncSummary
from replicator.src.watchers import NamespaceWatcher, SourceSecretWatcher

LOGGER = logging.getLogger(__name__)

SHUTDOWN_GRACE_SECONDS = 30
# How long an abandoned task gets to reach its next cancellation point.
ABANDON_JOIN_SECONDS = 5


@dataclass
class BackgroundTask:
    """A running daemon thread plus optional shutdown hooks.

    ``interrupt`` runs as soon as shutdown starts and unblocks I/O.
    ``abandon`` runs only if the thread outlives the grace period and tells
    it to stop at the next safe point.
    """

    name: str
    thread: threading.Thread
    interrupt: Callable[[], None] | None = None
    abandon: Callable[[], None] | None = None


def spawn_task(
    name: str,
    target: Callable[[threading.Event], None],
    stop_event: threading.Event,
    interrupt: Callable[[], None] | None = None,
    abandon: Callable[[], None] | None = None,
) -> BackgroundTask:
    """Run ``target(stop_event)`` in a daemon thread.

    A failing task logs and ends on its own; sibling tasks keep running.
    """

    def _run() -> None:
        try:
            target(stop_event)
        except CacheSyncError as exc:
            LOGGER.error("%s could not start: %s", name, exc)
        except Exception:
            LOGGER.exception("%s crashed", name)
        finally:
            LOGGER.info("%s stopped", name)

    thread = threading.Thread(target=_run, name=name, daemon=True)
    thread.start()
    return BackgroundTask(name=name, thread=thread, interrupt=interrupt, abandon=abandon)


def _as_rate_limiter(
    rate_limit: float | TokenBucket, metrics: ReplicatorMetrics | None
) -> TokenBucket:
    if isinstance(rate_limit, TokenBucket):
        return rate_limit
    return TokenBucket(rate_limit, metrics=metrics)


def build_engine(
    core_api: CoreV1Api,
    source_namespace: str,
    exclude_label_key: str = "",
    *,
    rate_limit: float | TokenBucket = DEFAULT_RATE_LIMIT,
    metrics: ReplicatorMetrics | None = None,
    stop_event: threading.Event | None = None,
) -> SyncEngine:
    return SyncEngine(
        core_api=core_api,
        policy=NamespacePolicy(source_namespace, exclude_label_key),
        rate_limiter=_as_rate_limiter(rate_limit, metrics),
        metrics=metrics,
        stop_event=stop_event,
    )


def reconcile_full(
    core_api: CoreV1Api,
    source_namespace: str,
    exclude_label_key: str = "",
    *,
    rate_limit: float | TokenBucket = DEFAULT_RATE_LIMIT,
    metrics: ReplicatorMetrics | None = None,
) -> SyncSummary:
    """Synchronously sync every source secret into every eligible namespace."""
    engine = build_engine(
        core_api, source_namespace, exclude_label_key, rate_limit=rate_limit, metrics=metrics
    )
    return engine.reconcile_full()


def start_source_secret_watcher(
    stop_event: threading.Event,
    core_api: CoreV1Api,
    source_namespace: str,
    exclude_label_key: str,
    debounce_seconds: float,
    rate_limit: float | TokenBucket,
    *,
    metrics: ReplicatorMetrics | None = None,
) -> list[BackgroundTask]:
    """Start the source secret watch and the debouncer that applies its events."""
    engine = build_engine(
        core_api,
        source_namespace,
        exclude_label_key,
        rate_limit=rate_limit,
        metrics=metrics,
        stop_event=stop_event,
    )
    debouncer = SecretEventDebouncer(engine, debounce_seconds, metrics=metrics)
    watcher = SourceSecretWatcher(core_api, source_namespace, debouncer, metrics=metrics)
    return [
        spawn_task(
            "secret-debouncer", debouncer.run, stop_event, abandon=debouncer.drain_cancel.set
        ),
        spawn_task("secret-watcher", watcher.run, stop_event, interrupt=watcher.request_stop),
    ]


def start_namespace_watcher(
    stop_event: threading.Event,
    core_api: CoreV1Api,
    source_namespace: str,
    exclude_label_key: str,
    *,
    rate_limit: float | TokenBucket = DEFAULT_RATE_LIMIT,
    metrics: ReplicatorMetrics | None = None,
) -> BackgroundTask:
    engine = build_engine(
        core_api,
        source_namespace,
        exclude_label_key,
        rate_limit=rate_limit,
        metrics=metrics,
        stop_event=stop_event,
    )
    watcher = NamespaceWatcher(engine, metrics=metrics)
    return spawn_task("namespace-watcher", watcher.run, stop_event, interrupt=watcher.request_stop)


def start_periodic_reconciler(
    stop_event: threading.Event,
    core_api: CoreV1Api,
    source_namespace: str,
    exclude_label_key: str,
    interval_minutes: float,
    *,
    rate_limit: float | TokenBucket = DEFAULT_RATE_LIMIT,
    metrics: ReplicatorMetrics | None = None,
    prune_orphans: bool = False,
    ready: threading.Event | None = None,
) -> BackgroundTask:
    engine = build_engine(
        core_api,
        source_namespace,
        exclude_label_key,
        rate_limit=rate_limit,
        metrics=metrics,
        stop_event=stop_event,
    )
    reconciler = PeriodicReconciler(
        engine,
        interval_minutes * 60,
        prune_orphans=prune_orphans,
        metrics=metrics,
        ready=ready,
    )
    return spawn_task("periodic-reconciler", reconciler.run, stop_event)


def start_status_updater(
    stop_event: threading.Event,
    core_api: CoreV1Api,
    source_namespace: str,
    exclude_label_key: str,
    metrics: ReplicatorMetrics,
    interval_seconds: float = 60.0,
) -> BackgroundTask:
    updater = SyncStatusUpdater(
        core_api,
        NamespacePolicy(source_namespace, exclude_label_key),
        metrics,
        interval_seconds=interval_seconds,
    )
    return spawn_task("metrics-updater", updater.run, stop_event)


def shutdown_tasks(
    tasks: list[BackgroundTask],
    stop_event: threading.Event,
    grace_seconds: float = SHUTDOWN_GRACE_SECONDS,
) -> bool:
    """Stop every task and wait up to *grace_seconds* in total.

    Tasks still running at the deadline get their ``abandon`` hook and up to
    ``ABANDON_JOIN_SECONDS`` to stop at their next cancellation point.
    Returns True only when every thread exited within the grace period.
    Threads are daemons, so anything left is dropped when the process exits.
    """
    stop_event.set()
    for task in tasks:
        if task.interrupt is not None:
            try:
                task.interrupt()
            except Exception:
                LOGGER.warning("Failed to interrupt %s", task.name, exc_info=True)

    deadline = time.monotonic() + grace_seconds
    for task in tasks:
        task.thread.join(timeout=max(0.0, deadline - time.monotonic()))

    stragglers = [task for task in tasks if task.thread.is_alive()]
    if not stragglers:
        LOGGER.info("All background tasks completed")
        return True

    LOGGER.warning(
        "Shutdown grace period expired; abandoning %s",
        ", ".join(task.name for task in stragglers),
    )
    for task in stragglers:
        if task.abandon is not None:
            task.abandon()
    deadline = time.monotonic() + ABANDON_JOIN_SECONDS
    for task in stragglers:
        if task.abandon is not None:
            task.thread.join(timeout=max(0.0, deadline - time.monotonic()))
    still_running = [task.name for task in stragglers if task.thread.is_alive()]
    if still_running:
        LOGGER.warning("Forcing exit (still running: %s)", ", ".join(still_running))
    return False
