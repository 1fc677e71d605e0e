from __future__ import annotations

import threading
import time

from replicator.src.config import DEFAULT_RATE_LIMIT
from replicator.src.debounce import EventKind, SecretEventDebouncer, SyncEvent
from replicator.src.filters import NamespacePolicy
from replicator.src.informer import CacheSyncError
from replicator.src.ratelimit import TokenBucket
from replicator.src.runtime import (
    build_engine,
    reconcile_full,
    shutdown_tasks,
    spawn_task,
)
from replicator.src.sync import SyncEngine
from replicator.tests.fakes import FakeCoreApi, make_secret


def test_failing_task_does_not_stop_siblings() -> None:
    stop = threading.Event()

    def crash(stop_event: threading.Event) -> None:
        raise RuntimeError("boom")

    def refuse(stop_event: threading.Event) -> None:
        raise CacheSyncError("access denied")

    crashed = spawn_task("crasher", crash, stop)
    refused = spawn_task("refuser", refuse, stop)
    healthy = spawn_task("healthy", lambda event: event.wait(5), stop)
    crashed.thread.join(timeout=5)
    refused.thread.join(timeout=5)

    assert not crashed.thread.is_alive()
    assert not refused.thread.is_alive()
    assert healthy.thread.is_alive()
    assert not stop.is_set()
    assert shutdown_tasks([crashed, refused, healthy], stop, grace_seconds=5)


def test_shutdown_calls_interrupt_hooks() -> None:
    stop = threading.Event()
    interrupted = threading.Event()
    task = spawn_task("blocked", lambda event: interrupted.wait(5), stop, interrupt=interrupted.set)

    assert shutdown_tasks([task], stop, grace_seconds=5)
    assert interrupted.is_set()


def test_shutdown_reports_stragglers() -> None:
    stop = threading.Event()
    release = threading.Event()
    task = spawn_task("stuck", lambda event: release.wait(5), stop)

    assert shutdown_tasks([task], stop, grace_seconds=0.05) is False
    release.set()
    task.thread.join(timeout=5)


def test_build_engine_shares_a_limiter(core_api: FakeCoreApi) -> None:
    limiter = TokenBucket(5)

    first = build_engine(core_api, "src", rate_limit=limiter)
    second = build_engine(core_api, "src", "skip", rate_limit=limiter)
    default = build_engine(core_api, "src")

    assert first.rate_limiter is limiter
    assert second.rate_limiter is limiter
    assert second.policy.exclude_label_key == "skip"
    assert default.rate_limiter is not None
    assert default.rate_limiter.rate == DEFAULT_RATE_LIMIT
    assert build_engine(core_api, "src", rate_limit=3).rate_limiter.rate == 3


def test_reconcile_full_function(cluster: FakeCoreApi) -> None:
    summary = reconcile_full(cluster, "src", rate_limit=100)

    assert summary.writes == 2
    assert summary.failed == 0


def test_unfinished_flush_is_cut_short_at_the_deadline(core_api: FakeCoreApi) -> None:
    core_api.add_namespace("src")
    for index in range(8):
        core_api.add_namespace(f"ns{index}")
    engine = SyncEngine(
        core_api, NamespacePolicy("src"), rate_limiter=TokenBucket(2, capacity=1)
    )
    debouncer = SecretEventDebouncer(engine, debounce_seconds=60, poll_seconds=0.05)
    source = make_secret("creds", data={"u": "YQ=="})
    debouncer.offer(SyncEvent(EventKind.ADD, "creds", source))
    stop = threading.Event()
    task = spawn_task(
        "secret-debouncer", debouncer.run, stop, abandon=debouncer.drain_cancel.set
    )

    finished = shutdown_tasks([task], stop, grace_seconds=0.3)
    writes_at_return = len(core_api.writes)
    time.sleep(1.0)

    assert finished is False
    assert debouncer.drain_cancel.is_set()
    assert not task.thread.is_alive()
    assert 1 <= writes_at_return < 8
    assert len(core_api.writes) == writes_at_return


def test_abandon_hook_is_skipped_for_tasks_that_finish_in_time() -> None:
    stop = threading.Event()
    abandoned = threading.Event()
    task = spawn_task("quick", lambda event: event.wait(5), stop, abandon=abandoned.set)

    assert shutdown_tasks([task], stop, grace_seconds=5)
    assert not abandoned.is_set()
