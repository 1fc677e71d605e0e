from __future__ import annotations

import copy
import logging
import threading
from typing import Any

from kubernetes.client import CoreV1Api, V1Namespace, V1Secret

from replicator.src.debounce import EventKind, SecretEventDebouncer, SyncEvent
from replicator.src.filters import SOURCE_SELECTOR
from replicator.src.informer import ResourceInformer
from replicator.src.metrics import ReplicatorMetrics
from replicator.src.sync import SyncAborted, SyncEngine, SyncOutcome, secret_data_equal

LOGGER = logging.getLogger(__name__)


class SourceSecretWatcher:
    """Turn changes to labeled source secrets into debounced sync events.

    Metadata-only updates (labels other than the marker, annotations) are
    ignored so that touching a source secret does not fan out writes to
    every namespace.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        source_namespace: str,
        debouncer: SecretEventDebouncer,
        *,
        metrics: ReplicatorMetrics | None = None,
        logger: logging.Logger | None = None,
        **informer_options: Any,
    ) -> None:
        self.source_namespace = source_namespace
        self.debouncer = debouncer
        self.logger = logger or LOGGER
        self._stop_event = threading.Event()
        self.informer = ResourceInformer(
            "secret",
            core_api.list_namespaced_secret,
            list_kwargs={"namespace": source_namespace, "label_selector": SOURCE_SELECTOR},
            object_type=V1Secret,
            on_add=self.on_add,
            on_update=self.on_update,
            on_delete=self.on_delete,
            metrics=metrics,
            logger=self.logger,
            **informer_options,
        )

    def _emit(self, event: SyncEvent) -> None:
        if not self.debouncer.submit(event, self._stop_event):
            self.logger.warning(
                "Dropped %s event for secret %s; debouncer is shutting down",
                event.kind.value,
                event.name,
            )

    def on_add(self, secret: Any) -> None:
        self.logger.info("Source secret added: %s", secret.metadata.name)
        self._emit(SyncEvent(EventKind.ADD, secret.metadata.name, copy.deepcopy(secret)))

    def on_update(self, old_secret: Any, new_secret: Any) -> None:
        name = new_secret.metadata.name
        if secret_data_equal(old_secret, new_secret):
            self.logger.debug("Ignoring metadata-only update to source secret %s", name)
            return
        self.logger.info("Source secret updated: %s", name)
        self._emit(SyncEvent(EventKind.UPDATE, name, copy.deepcopy(new_secret)))

    def on_delete(self, secret: Any) -> None:
        self.logger.info("Source secret deleted: %s", secret.metadata.name)
        self._emit(SyncEvent(EventKind.DELETE, secret.metadata.name))

    def request_stop(self) -> None:
        self.informer.request_stop()

    def run(self, stop_event: threading.Event) -> None:
        self._stop_event = stop_event
        self.informer.run(stop_event)


class NamespaceWatcher:
    """Populate newly created namespaces with every current source secret.

    Only the new namespace is reconciled; a full sweep would be wasted work
    in a large cluster.  A namespace that loses the exclusion label is
    treated the same way as a new one.
    """

    def __init__(
        self,
        engine: SyncEngine,
        *,
        metrics: ReplicatorMetrics | None = None,
        logger: logging.Logger | None = None,
        **informer_options: Any,
    ) -> None:
        self.engine = engine
        self.logger = logger or LOGGER
        self._stop_event = threading.Event()
        self.informer = ResourceInformer(
            "namespace",
            engine.core_api.list_namespace,
            object_type=V1Namespace,
            on_add=self.on_namespace_added,
            on_update=self.on_namespace_updated,
            metrics=metrics,
            logger=self.logger,
            **informer_options,
        )

    def on_namespace_added(self, namespace: Any) -> None:
        name = namespace.metadata.name
        self.logger.info("New namespace created: %s", name)
        if not self.engine.policy.allows(namespace):
            self.logger.info("Skipping sync for excluded namespace %s", name)
            return
        self._sync(namespace)

    def on_namespace_updated(self, old_namespace: Any, new_namespace: Any) -> None:
        policy = self.engine.policy
        if policy.allows(old_namespace) or not policy.allows(new_namespace):
            return
        self.logger.info(
            "Namespace %s is no longer excluded; syncing secrets", new_namespace.metadata.name
        )
        self._sync(new_namespace)

    def _sync(self, namespace: Any) -> None:
        name = namespace.metadata.name
        try:
            summary = self.engine.reconcile_namespace(namespace, cancel=self._stop_event)
        except SyncAborted:
            self.logger.info("Sync of namespace %s interrupted by shutdown", name)
            return
        if summary.failed:
            self.logger.warning(
                "Synced secrets to namespace %s with %d failure(s)", name, summary.failed
            )
        else:
            self.logger.info(
                "Successfully synced secrets to namespace %s (created=%d updated=%d)",
                name,
                summary.count(SyncOutcome.CREATED),
                summary.count(SyncOutcome.UPDATED),
            )

    def request_stop(self) -> None:
        self.informer.request_stop()

    def run(self, stop_event: threading.Event) -> None:
        self._stop_event = stop_event
        self.informer.run(stop_event)
