from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from kubernetes.client import ApiException, CoreV1Api, V1ObjectMeta, V1Secret

from replicator.src.filters import MARKER_LABEL_KEY, NamespacePolicy
from replicator.src.kube import (
    API_TIMEOUT_SECONDS,
    is_conflict,
    is_not_found,
    list_namespaces,
    list_source_secrets,
)
from replicator.src.metrics import ReplicatorMetrics
from replicator.src.ratelimit import TokenBucket

# Ownership label stamped on every replica; its value is the source namespace.
REPLICA_LABEL_KEY = "push-to-k8s/replicated-from"


class SyncOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    EXCLUDED = "excluded"
    DELETED = "deleted"
    ABSENT = "absent"
    ERROR = "error"


class SyncAborted(RuntimeError):
    """Raised when waiting for a rate limiter token was cancelled."""


@dataclass
class SyncSummary:
    """Tally of per-namespace outcomes for one multi-namespace operation."""

    counts: dict[SyncOutcome, int] = field(default_factory=dict)
    aborted: bool = False

    def record(self, outcome: SyncOutcome) -> None:
        self.counts[outcome] = self.counts.get(outcome, 0) + 1

    def count(self, outcome: SyncOutcome) -> int:
        return self.counts.get(outcome, 0)

    def merge(self, other: SyncSummary) -> None:
        for outcome, value in other.counts.items():
            self.counts[outcome] = self.counts.get(outcome, 0) + value
        self.aborted = self.aborted or other.aborted

    @property
    def failed(self) -> int:
        return self.count(SyncOutcome.ERROR)

    @property
    def writes(self) -> int:
        return (
            self.count(SyncOutcome.CREATED)
            + self.count(SyncOutcome.UPDATED)
            + self.count(SyncOutcome.DELETED)
        )


def normalize_map(raw: Any) -> dict[str, str]:
    """Coerce secret ``data``/``string_data`` into a plain dict.

    ``None`` and an empty mapping compare equal, which is what the API does
    when a secret has no keys.
    """
    if not isinstance(raw, Mapping):
        return {}
    return {k: ("" if v is None else str(v)) for k, v in raw.items() if isinstance(k, str)}


def secret_data_equal(left: Any, right: Any) -> bool:
    """Return True when two secrets carry identical ``data`` and ``string_data``."""
    if normalize_map(getattr(left, "data", None)) != normalize_map(getattr(right, "data", None)):
        return False
    return normalize_map(getattr(left, "string_data", None)) == normalize_map(
        getattr(right, "string_data", None)
    )


def secret_name(secret: Any) -> str | None:
    name = getattr(getattr(secret, "metadata", None), "name", None)
    return name if isinstance(name, str) and name else None


def _namespace_name(namespace: Any) -> str:
    return getattr(getattr(namespace, "metadata", None), "name", None) or "<unknown>"


def replica_labels(source_secret: Any, source_namespace: str) -> dict[str, str]:
    """Source labels minus the marker, plus the ownership label."""
    labels = dict(getattr(source_secret.metadata, "labels", None) or {})
    labels.pop(MARKER_LABEL_KEY, None)
    labels[REPLICA_LABEL_KEY] = source_namespace
    return labels


def _copy_or_none(raw: Any) -> dict[str, str] | None:
    return dict(raw) if isinstance(raw, Mapping) else None


class SyncEngine:
    """Create/update/delete replicas of source secrets, one namespace at a time.

    Every per-namespace decision is read-compare-write against the API
    server.  Updates mutate the replica that was just read so its own
    ``uid`` and ``resourceVersion`` go back in the request; the source
    secret's identity metadata never reaches an update or create body.

    A token is taken from the shared :class:`TokenBucket` before each
    namespace is touched.  If that wait is cancelled :class:`SyncAborted` is
    raised and the caller drops the rest of its batch.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        policy: NamespacePolicy,
        rate_limiter: TokenBucket | None = None,
        metrics: ReplicatorMetrics | None = None,
        stop_event: threading.Event | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.policy = policy
        self.rate_limiter = rate_limiter
        self.metrics = metrics
        self.stop_event = stop_event
        self.logger = logger or logging.getLogger(__name__)

    @property
    def source_namespace(self) -> str:
        return self.policy.source_namespace

    def _acquire(self, cancel: threading.Event | None) -> None:
        if self.rate_limiter is None:
            return
        if not self.rate_limiter.acquire(cancel):
            raise SyncAborted("rate limiter wait cancelled")

    def _record(self, outcome: SyncOutcome) -> None:
        if self.metrics is not None:
            self.metrics.sync_operations_total.labels(outcome=outcome.value).inc()

    def _cancel_event(self, cancel: threading.Event | None) -> threading.Event | None:
        return cancel if cancel is not None else self.stop_event

    def list_namespaces(self) -> list[Any]:
        return list_namespaces(self.core_api)

    def list_source_secrets(self) -> list[Any]:
        return list_source_secrets(self.core_api, self.source_namespace)

    def _read_replica(self, name: str, namespace: str) -> Any | None:
        try:
            return self.core_api.read_namespaced_secret(
                name=name,
                namespace=namespace,
                _request_timeout=API_TIMEOUT_SECONDS,
            )
        except ApiException as exc:
            if is_not_found(exc):
                return None
            raise

    def _build_replica(self, source_secret: Any, namespace: str) -> V1Secret:
        """Build a brand-new replica body with no identity metadata at all."""
        metadata = source_secret.metadata
        return V1Secret(
            api_version="v1",
            kind="Secret",
            metadata=V1ObjectMeta(
                name=metadata.name,
                namespace=namespace,
                labels=replica_labels(source_secret, self.source_namespace),
                annotations=_copy_or_none(getattr(metadata, "annotations", None)),
            ),
            data=_copy_or_none(getattr(source_secret, "data", None)),
            string_data=_copy_or_none(getattr(source_secret, "string_data", None)),
            type=getattr(source_secret, "type", None),
        )

    def _is_owned(self, replica: Any) -> bool:
        labels = getattr(replica.metadata, "labels", None) or {}
        return labels.get(REPLICA_LABEL_KEY) == self.source_namespace

    def _apply_source_to(self, existing: Any, source_secret: Any) -> Any:
        """Overwrite the replica's payload in place, keeping its own identity."""
        existing.data = _copy_or_none(getattr(source_secret, "data", None))
        existing.string_data = _copy_or_none(getattr(source_secret, "string_data", None))
        existing.type = getattr(source_secret, "type", None)
        existing.metadata.labels = replica_labels(source_secret, self.source_namespace)
        existing.metadata.annotations = _copy_or_none(
            getattr(source_secret.metadata, "annotations", None)
        )
        return existing

    def reconcile_one(
        self,
        source_secret: Any,
        namespace: Any,
        *,
        cancel: threading.Event | None = None,
    ) -> SyncOutcome:
        """Converge the replica of *source_secret* in *namespace*.

        Raises :class:`ApiException` for any API failure other than a
        not-found read or an already-exists create race.
        """
        name = secret_name(source_secret)
        if name is None:
            raise ValueError("source secret has no metadata.name")
        target = _namespace_name(namespace)

        if not self.policy.allows(namespace):
            self.logger.debug("Namespace %s is excluded; not syncing secret %s", target, name)
            self._record(SyncOutcome.EXCLUDED)
            return SyncOutcome.EXCLUDED

        self._acquire(self._cancel_event(cancel))

        existing = self._read_replica(name, target)
        if existing is None:
            body = self._build_replica(source_secret, target)
            try:
                self.core_api.create_namespaced_secret(
                    namespace=target,
                    body=body,
                    _request_timeout=API_TIMEOUT_SECONDS,
                )
            except ApiException as exc:
                if not is_conflict(exc):
                    raise
                self.logger.info(
                    "Secret %s appeared in namespace %s concurrently; leaving it for the next pass",
                    name,
                    target,
                )
                self._record(SyncOutcome.SKIPPED)
                return SyncOutcome.SKIPPED
            self.logger.info("Created secret %s in namespace %s", name, target)
            self._record(SyncOutcome.CREATED)
            return SyncOutcome.CREATED

        if secret_data_equal(existing, source_secret) and self._is_owned(existing):
            self.logger.debug("Secret %s in namespace %s is up-to-date", name, target)
            self._record(SyncOutcome.SKIPPED)
            return SyncOutcome.SKIPPED

        body = self._apply_source_to(existing, source_secret)
        self.core_api.replace_namespaced_secret(
            name=name,
            namespace=target,
            body=body,
            _request_timeout=API_TIMEOUT_SECONDS,
        )
        self.logger.info("Updated secret %s in namespace %s", name, target)
        self._record(SyncOutcome.UPDATED)
        return SyncOutcome.UPDATED

    def reconcile_all_namespaces(
        self,
        source_secret: Any,
        namespaces: Iterable[Any],
        *,
        cancel: threading.Event | None = None,
    ) -> SyncSummary:
        summary = SyncSummary()
        name = secret_name(source_secret) or "<unknown>"
        for namespace in namespaces:
            try:
                summary.record(self.reconcile_one(source_secret, namespace, cancel=cancel))
            except SyncAborted:
                raise
            except Exception:
                self.logger.exception(
                    "Failed to sync secret %s to namespace %s", name, _namespace_name(namespace)
                )
                self._record(SyncOutcome.ERROR)
                summary.record(SyncOutcome.ERROR)
        return summary

    def remove_from_all_namespaces(
        self,
        name: str,
        namespaces: Iterable[Any],
        *,
        cancel: threading.Event | None = None,
    ) -> SyncSummary:
        """Delete replica *name* from every eligible namespace.

        A replica that is already gone counts as success.
        """
        summary = SyncSummary()
        for namespace in namespaces:
            target = _namespace_name(namespace)
            if not self.policy.allows(namespace):
                self._record(SyncOutcome.EXCLUDED)
                summary.record(SyncOutcome.EXCLUDED)
                continue
            outcome = self._delete_replica(name, target, cancel=cancel)
            summary.record(outcome)
        return summary

    def _delete_replica(
        self, name: str, namespace: str, *, cancel: threading.Event | None = None
    ) -> SyncOutcome:
        self._acquire(self._cancel_event(cancel))
        try:
            self.core_api.delete_namespaced_secret(
                name=name,
                namespace=namespace,
                _request_timeout=API_TIMEOUT_SECONDS,
            )
        except ApiException as exc:
            if is_not_found(exc):
                self.logger.debug("Secret %s already absent from namespace %s", name, namespace)
                self._record(SyncOutcome.ABSENT)
                return SyncOutcome.ABSENT
            self.logger.warning(
                "Failed to delete secret %s from namespace %s: %s", name, namespace, exc.reason
            )
            self._record(SyncOutcome.ERROR)
            return SyncOutcome.ERROR
        except Exception:
            self.logger.exception("Failed to delete secret %s from namespace %s", name, namespace)
            self._record(SyncOutcome.ERROR)
            return SyncOutcome.ERROR
        self.logger.info("Deleted secret %s from namespace %s", name, namespace)
        self._record(SyncOutcome.DELETED)
        return SyncOutcome.DELETED

    def reconcile_namespace(
        self, namespace: Any, *, cancel: threading.Event | None = None
    ) -> SyncSummary:
        """Sync every current source secret into exactly one namespace."""
        summary = SyncSummary()
        if not self.policy.allows(namespace):
            summary.record(SyncOutcome.EXCLUDED)
            return summary
        for source_secret in self.list_source_secrets():
            summary.merge(self.reconcile_all_namespaces(source_secret, [namespace], cancel=cancel))
        return summary

    def reconcile_full(self, *, cancel: threading.Event | None = None) -> SyncSummary:
        """Sync every labeled source secret into every eligible namespace.

        Listing failures propagate; per-pair failures are tallied and the
        sweep carries on.
        """
        source_secrets = self.list_source_secrets()
        namespaces = self.list_namespaces()
        summary = SyncSummary()
        try:
            for source_secret in source_secrets:
                summary.merge(
                    self.reconcile_all_namespaces(source_secret, namespaces, cancel=cancel)
                )
        except SyncAborted:
            self.logger.warning("Full reconciliation interrupted by shutdown")
            summary.aborted = True
        self.logger.info(
            "Full reconciliation of %d secret(s) across %d namespace(s): "
            "created=%d updated=%d skipped=%d excluded=%d failed=%d",
            len(source_secrets),
            len(namespaces),
            summary.count(SyncOutcome.CREATED),
            summary.count(SyncOutcome.UPDATED),
            summary.count(SyncOutcome.SKIPPED),
            summary.count(SyncOutcome.EXCLUDED),
            summary.failed,
        )
        return summary

    def prune_orphans(self, *, cancel: threading.Event | None = None) -> SyncSummary:
        """Delete replicas whose source secret no longer exists.

        Only secrets carrying this instance's ownership label are candidates,
        and only in namespaces that are currently eligible.
        """
        source_names = {
            name for name in (secret_name(s) for s in self.list_source_secrets()) if name
        }
        eligible = {
            _namespace_name(ns) for ns in self.list_namespaces() if self.policy.allows(ns)
        }
        replicas = self.core_api.list_secret_for_all_namespaces(
            label_selector=f"{REPLICA_LABEL_KEY}={self.source_namespace}",
            _request_timeout=API_TIMEOUT_SECONDS,
        )
        summary = SyncSummary()
        try:
            for replica in getattr(replicas, "items", None) or []:
                name = secret_name(replica)
                namespace = getattr(replica.metadata, "namespace", None)
                if name is None or name in source_names or namespace not in eligible:
                    continue
                self.logger.info("Pruning orphaned replica %s/%s", namespace, name)
                summary.record(self._delete_replica(name, namespace, cancel=cancel))
        except SyncAborted:
            summary.aborted = True
        return summary
