from __future__ import annotations

import threading
import time

import pytest

from replicator.src.filters import NamespacePolicy
from replicator.src.metrics import ReplicatorMetrics
from replicator.src.reconciler import PeriodicReconciler
from replicator.src.sync import REPLICA_LABEL_KEY, SyncEngine
from replicator.tests.fakes import FakeCoreApi, make_secret


def _reconciler(
    core_api: FakeCoreApi, metrics: ReplicatorMetrics | None = None, **kwargs: object
) -> PeriodicReconciler:
    engine = SyncEngine(core_api, NamespacePolicy("src"), metrics=metrics)
    return PeriodicReconciler(engine, metrics=metrics, **kwargs)  # type: ignore[arg-type]


def test_rejects_non_positive_interval(core_api: FakeCoreApi) -> None:
    with pytest.raises(ValueError):
        _reconciler(core_api, interval_seconds=0)


def test_run_once_converges_and_marks_ready(
    cluster: FakeCoreApi, metrics: ReplicatorMetrics
) -> None:
    reconciler = _reconciler(cluster, metrics, interval_seconds=60)

    summary = reconciler.run_once()

    assert summary is not None and summary.failed == 0
    assert reconciler.ready.is_set()
    assert cluster.get("ns1", "creds") is not None
    assert metrics.registry.get_sample_value("replicator_sweeps_total", {"result": "ok"}) == 1.0


def test_run_once_survives_listing_failure(
    cluster: FakeCoreApi, metrics: ReplicatorMetrics
) -> None:
    cluster.fail("list", "src", status=500)
    reconciler = _reconciler(cluster, metrics, interval_seconds=60)

    assert reconciler.run_once() is None
    assert not reconciler.ready.is_set()
    assert metrics.registry.get_sample_value("replicator_sweeps_total", {"result": "error"}) == 1.0


def test_partial_failure_is_recorded(cluster: FakeCoreApi, metrics: ReplicatorMetrics) -> None:
    cluster.fail("create", "ns1", status=500)
    reconciler = _reconciler(cluster, metrics, interval_seconds=60)

    summary = reconciler.run_once()

    assert summary is not None and summary.failed == 1
    assert cluster.get("ns2", "creds") is not None
    sample = metrics.registry.get_sample_value("replicator_sweeps_total", {"result": "partial"})
    assert sample == 1.0


def _orphaned_cluster(cluster: FakeCoreApi) -> FakeCoreApi:
    _reconciler(cluster, interval_seconds=60).run_once()
    cluster.add_secret(make_secret("gone", data={"x": "eA=="}))
    _reconciler(cluster, interval_seconds=60).run_once()
    cluster.secrets.pop(("src", "gone"))
    return cluster


def test_orphans_are_kept_by_default(cluster: FakeCoreApi) -> None:
    _orphaned_cluster(cluster)

    _reconciler(cluster, interval_seconds=60).run_once()

    assert cluster.get("ns1", "gone") is not None


def test_orphans_are_pruned_when_enabled(cluster: FakeCoreApi) -> None:
    _orphaned_cluster(cluster)
    assert cluster.get("ns1", "gone").metadata.labels[REPLICA_LABEL_KEY] == "src"

    _reconciler(cluster, interval_seconds=60, prune_orphans=True).run_once()

    assert cluster.get("ns1", "gone") is None
    assert cluster.get("ns2", "gone") is None
    assert cluster.get("ns1", "creds") is not None


def test_run_sweeps_immediately_and_on_every_tick(cluster: FakeCoreApi) -> None:
    reconciler = _reconciler(cluster, interval_seconds=0.1)
    sweeps: list[float] = []
    original = reconciler.engine.reconcile_full

    def counting_reconcile_full(**kwargs: object):  # type: ignore[no-untyped-def]
        sweeps.append(time.monotonic())
        return original(**kwargs)  # type: ignore[arg-type]

    reconciler.engine.reconcile_full = counting_reconcile_full  # type: ignore[method-assign]
    stop = threading.Event()
    thread = threading.Thread(target=reconciler.run, args=(stop,), daemon=True)
    thread.start()
    time.sleep(0.35)
    stop.set()
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert len(sweeps) >= 2
    assert cluster.get("ns1", "creds") is not None
