"""End-to-end replication scenarios against the in-memory cluster."""

from __future__ import annotations

import threading
import time

from replicator.src.debounce import SecretEventDebouncer
from replicator.src.filters import MARKER_LABEL_KEY
from replicator.src.runtime import build_engine, reconcile_full
from replicator.src.watchers import NamespaceWatcher, SourceSecretWatcher
from replicator.tests.fakes import FakeCoreApi, make_secret


def _wait_for(predicate, timeout: float = 5.0) -> bool:  # type: ignore[no-untyped-def]
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def test_full_sweep_replicates_to_every_other_namespace(cluster: FakeCoreApi) -> None:
    source_before = cluster.get("src", "creds")

    reconcile_full(cluster, "src")

    for namespace in ("ns1", "ns2"):
        replica = cluster.get(namespace, "creds")
        assert replica.data == {"user": "YQ=="}
        assert MARKER_LABEL_KEY not in (replica.metadata.labels or {})
    assert cluster.get("src", "creds") == source_before
    assert [key for key in cluster.secrets if key[0] == "src"] == [("src", "creds")]


def test_full_sweep_skips_excluded_namespace(cluster: FakeCoreApi) -> None:
    cluster.add_namespace("ns2", {"skip": "true"})

    reconcile_full(cluster, "src", "skip")

    assert cluster.get("ns1", "creds") is not None
    assert cluster.get("ns2", "creds") is None


def _apply_change(core_api: FakeCoreApi, change, converged) -> None:  # type: ignore[no-untyped-def]
    """Sync the watch cache, apply *change*, and wait for the debouncer to converge."""
    stop = threading.Event()
    engine = build_engine(core_api, "src", rate_limit=100)
    debouncer = SecretEventDebouncer(engine, debounce_seconds=0.2, poll_seconds=0.05)
    watcher = SourceSecretWatcher(core_api, "src", debouncer)
    watcher.informer.wait_for_cache_sync(stop)
    thread = threading.Thread(target=debouncer.run, args=(stop,), daemon=True)
    thread.start()
    event_type, obj = change()
    watcher.informer._dispatch(event_type, obj)

    assert _wait_for(converged)
    stop.set()
    thread.join(timeout=5)
    assert not thread.is_alive()


def test_source_update_reaches_replicas_after_debounce(cluster: FakeCoreApi) -> None:
    reconcile_full(cluster, "src")
    replica_uid = cluster.get("ns1", "creds").metadata.uid

    def update_source() -> tuple[str, object]:
        return "MODIFIED", cluster.add_secret(make_secret("creds", data={"user": "Yg=="}))

    _apply_change(
        cluster,
        update_source,
        lambda: all(
            cluster.get(ns, "creds").data == {"user": "Yg=="} for ns in ("ns1", "ns2")
        ),
    )

    assert cluster.get("ns1", "creds").metadata.uid == replica_uid


def test_source_delete_removes_replicas_after_debounce(cluster: FakeCoreApi) -> None:
    reconcile_full(cluster, "src")

    def delete_source() -> tuple[str, object]:
        return "DELETED", cluster.secrets.pop(("src", "creds"))

    _apply_change(
        cluster,
        delete_source,
        lambda: cluster.get("ns1", "creds") is None and cluster.get("ns2", "creds") is None,
    )

    assert ("ns1", "creds") not in cluster.secrets


def test_new_namespace_is_populated_without_a_sweep(cluster: FakeCoreApi) -> None:
    cluster.add_secret(make_secret("token", data={"t": "MQ=="}))
    watcher = NamespaceWatcher(build_engine(cluster, "src"))
    watcher.informer.wait_for_cache_sync(threading.Event())

    watcher.informer._dispatch("ADDED", cluster.add_namespace("ns3"))

    assert cluster.get("ns3", "creds").data == {"user": "YQ=="}
    assert cluster.get("ns3", "token").data == {"t": "MQ=="}
    assert cluster.get("ns1", "creds") is None
