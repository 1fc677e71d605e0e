from __future__ import annotations

import logging
import os
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, CoreV1Api
from kubernetes.config.config_exception import ConfigException

from replicator.src.filters import SOURCE_SELECTOR
from replicator.src.metrics import ReplicatorMetrics

LOGGER = logging.getLogger(__name__)

# Upper bound for any single API call so one hung request cannot wedge a batch.
API_TIMEOUT_SECONDS = 30


def load_kube_configuration(metrics: ReplicatorMetrics | None = None) -> str:
    """Load Kubernetes client configuration and return which source was used.

    ``KUBECONFIG`` wins when set.  Otherwise in-cluster config is attempted
    first (running inside a pod), falling back to the local kubeconfig for
    development.
    """
    kubeconfig = os.getenv("KUBECONFIG")
    source = "kubeconfig" if kubeconfig else "in-cluster"
    try:
        if kubeconfig:
            config.load_kube_config(config_file=kubeconfig)
            LOGGER.info("Loaded kubeconfig from KUBECONFIG=%s", kubeconfig)
        else:
            try:
                config.load_incluster_config()
                LOGGER.info("Loaded in-cluster Kubernetes configuration")
            except ConfigException:
                source = "kubeconfig"
                config.load_kube_config()
                LOGGER.info("Loaded local kubeconfig")
    except Exception:
        if metrics is not None:
            metrics.connection_failures_total.labels(source=source).inc()
        raise

    if metrics is not None:
        metrics.connection_success_total.labels(source=source).inc()
    return source


def build_core_api() -> CoreV1Api:
    """Return a CoreV1 API client using the active kube configuration."""
    return client.CoreV1Api()


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404


def is_conflict(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 409


def is_access_denied(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status in {401, 403}


def list_source_secrets(core_api: CoreV1Api, namespace: str) -> list[Any]:
    """Return every secret in *namespace* carrying the source marker label."""
    secrets = core_api.list_namespaced_secret(
        namespace=namespace,
        label_selector=SOURCE_SELECTOR,
        _request_timeout=API_TIMEOUT_SECONDS,
    )
    items = list(getattr(secrets, "items", None) or [])
    if not items:
        LOGGER.info("No secrets found in namespace %s with label %s", namespace, SOURCE_SELECTOR)
    return items


def list_namespaces(core_api: CoreV1Api) -> list[Any]:
    namespaces = core_api.list_namespace(_request_timeout=API_TIMEOUT_SECONDS)
    return list(getattr(namespaces, "items", None) or [])
