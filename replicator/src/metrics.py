from __future__ import annotations

from dataclasses import dataclass

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Info


@dataclass(frozen=True)
class ReplicatorMetrics:
    """Prometheus metrics exported on ``/metrics``.

    Built once at process start with :meth:`create` and passed into every
    component that records something, so tests can hand in an instance bound
    to a private :class:`CollectorRegistry`.
    """

    registry: CollectorRegistry
    connection_success_total: Counter
    connection_failures_total: Counter
    namespace_total: Gauge
    namespace_synced_total: Gauge
    namespace_not_synced_total: Gauge
    source_secrets_total: Gauge
    managed_secrets_total: Gauge
    sync_operations_total: Counter
    debounced_events_total: Counter
    pending_events: Gauge
    batches_total: Counter
    rate_limit_wait_seconds_total: Counter
    watch_errors_total: Counter
    watch_reconnects_total: Counter
    sweeps_total: Counter
    build_info: Info

    @classmethod
    def create(cls, registry: CollectorRegistry = REGISTRY) -> ReplicatorMetrics:
        return cls(
            registry=registry,
            connection_success_total=Counter(
                "k8s_connection_success_total",
                "Total number of successful Kubernetes client connections",
                ["source"],
                registry=registry,
            ),
            connection_failures_total=Counter(
                "k8s_connection_failures_total",
                "Total number of failed Kubernetes client connections",
                ["source"],
                registry=registry,
            ),
            namespace_total=Gauge(
                "k8s_namespace_total",
                "Total number of namespaces in the cluster",
                registry=registry,
            ),
            namespace_synced_total=Gauge(
                "k8s_namespace_synced_total",
                "Number of eligible namespaces holding every source secret",
                registry=registry,
            ),
            namespace_not_synced_total=Gauge(
                "k8s_namespace_not_synced_total",
                "Number of eligible namespaces missing at least one source secret",
                registry=registry,
            ),
            source_secrets_total=Gauge(
                "k8s_source_secrets_total",
                "Total number of secrets in the source namespace with the label push-to-k8s=source",
                registry=registry,
            ),
            managed_secrets_total=Gauge(
                "k8s_managed_secrets_total",
                "Total number of replica secrets present in eligible namespaces",
                registry=registry,
            ),
            sync_operations_total=Counter(
                "replicator_sync_operations_total",
                "Per-namespace sync outcomes",
                ["outcome"],
                registry=registry,
            ),
            debounced_events_total=Counter(
                "replicator_debounced_events_total",
                "Source secret events coalesced into an already pending entry",
                registry=registry,
            ),
            pending_events=Gauge(
                "replicator_pending_events",
                "Secret names waiting for the debounce window to close",
                registry=registry,
            ),
            batches_total=Counter(
                "replicator_batches_total",
                "Debounced batches applied",
                registry=registry,
            ),
            rate_limit_wait_seconds_total=Counter(
                "replicator_rate_limit_wait_seconds_total",
                "Seconds spent waiting for rate limiter tokens",
                registry=registry,
            ),
            watch_errors_total=Counter(
                "replicator_watch_errors_total",
                "Total Kubernetes watch errors",
                ["kind"],
                registry=registry,
            ),
            watch_reconnects_total=Counter(
                "replicator_watch_reconnects_total",
                "Total watch stream reconnects after the initial connection",
                ["kind"],
                registry=registry,
            ),
            sweeps_total=Counter(
                "replicator_sweeps_total",
                "Full reconciliation sweeps",
                ["result"],
                registry=registry,
            ),
            build_info=Info(
                "push_to_k8s",
                "Build information for the replicator",
                registry=registry,
            ),
        )
