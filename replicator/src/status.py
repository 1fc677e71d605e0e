from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass

from kubernetes.client import CoreV1Api

from replicator.src.filters import NamespacePolicy
from replicator.src.kube import API_TIMEOUT_SECONDS, list_namespaces, list_source_secrets
from replicator.src.metrics import ReplicatorMetrics
from replicator.src.sync import REPLICA_LABEL_KEY, secret_name

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncStatus:
    namespaces: int
    source_secrets: int
    synced: int
    not_synced: int
    managed: int


def collect_sync_status(core_api: CoreV1Api, policy: NamespacePolicy) -> SyncStatus:
    """Count how many eligible namespaces hold every source secret.

    Uses three list calls regardless of cluster size: namespaces, source
    secrets, and replicas selected by the ownership label.
    """
    namespaces = list_namespaces(core_api)
    sources = list_source_secrets(core_api, policy.source_namespace)
    source_names = {name for name in (secret_name(s) for s in sources) if name}
    replicas = core_api.list_secret_for_all_namespaces(
        label_selector=f"{REPLICA_LABEL_KEY}={policy.source_namespace}",
        _request_timeout=API_TIMEOUT_SECONDS,
    )

    present: dict[str, set[str]] = defaultdict(set)
    for replica in getattr(replicas, "items", None) or []:
        name = secret_name(replica)
        if name in source_names:
            present[replica.metadata.namespace].add(name)

    synced = not_synced = managed = 0
    for namespace in namespaces:
        if not policy.allows(namespace):
            continue
        held = present.get(namespace.metadata.name, set())
        managed += len(held)
        if source_names <= held:
            synced += 1
        else:
            not_synced += 1

    return SyncStatus(
        namespaces=len(namespaces),
        source_secrets=len(source_names),
        synced=synced,
        not_synced=not_synced,
        managed=managed,
    )


class SyncStatusUpdater:
    """Refresh the namespace/secret gauges on a fixed interval."""

    def __init__(
        self,
        core_api: CoreV1Api,
        policy: NamespacePolicy,
        metrics: ReplicatorMetrics,
        interval_seconds: float = 60.0,
    ) -> None:
        self.core_api = core_api
        self.policy = policy
        self.metrics = metrics
        self.interval_seconds = interval_seconds

    def refresh(self) -> SyncStatus | None:
        try:
            status = collect_sync_status(self.core_api, self.policy)
        except Exception:
            LOGGER.exception("Failed to collect sync status metrics")
            return None
        self.metrics.namespace_total.set(status.namespaces)
        self.metrics.source_secrets_total.set(status.source_secrets)
        self.metrics.namespace_synced_total.set(status.synced)
        self.metrics.namespace_not_synced_total.set(status.not_synced)
        self.metrics.managed_secrets_total.set(status.managed)
        LOGGER.info(
            "Metrics updated: namespaces=%d synced=%d not_synced=%d source_secrets=%d managed=%d",
            status.namespaces,
            status.synced,
            status.not_synced,
            status.source_secrets,
            status.managed,
        )
        return status

    def run(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(timeout=self.interval_seconds):
            self.refresh()
        LOGGER.info("Metrics updater shutting down")
