from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from replicator.src.config import ConfigError, load_config
from replicator.src.health import start_health_server
from replicator.src.kube import build_core_api, load_kube_configuration
from replicator.src.metrics import ReplicatorMetrics
from replicator.src.ratelimit import TokenBucket
from replicator.src.runtime import (
    SHUTDOWN_GRACE_SECONDS,
    BackgroundTask,
    shutdown_tasks,
    start_namespace_watcher,
    start_periodic_reconciler,
    start_source_secret_watcher,
    start_status_updater,
)

RUNTIME_VERSION = "1.0.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(log_level: str = "INFO") -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    set_log_level(log_level)


def set_log_level(log_level: str) -> None:
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def version_text() -> str:
    return (
        f"Version: {os.getenv('APP_VERSION', RUNTIME_VERSION)}\n"
        f"Git Commit: {os.getenv('GIT_SHA', 'unknown')}\n"
        f"Build Time: {os.getenv('BUILD_TIME', 'unknown')}"
    )


def main() -> None:
    """Entrypoint: configure logging, connect to the cluster, and run every sync task."""
    configure_logging()
    logger = logging.getLogger(__name__)

    try:
        cfg = load_config()
    except ConfigError as exc:
        logger.error("%s", exc)
        raise SystemExit(1) from exc
    set_log_level(cfg.log_level)
    logger.info(
        "Starting push-to-k8s (namespace=%s exclude_label=%r interval=%dm debounce=%ds "
        "rate_limit=%d/s secret_watcher=%s)",
        cfg.namespace,
        cfg.exclude_namespace_label,
        cfg.sync_interval_minutes,
        cfg.debounce_seconds,
        cfg.rate_limit,
        cfg.enable_secret_watcher,
    )
    if cfg.debug:
        logger.debug("Debug mode enabled")

    metrics = ReplicatorMetrics.create()
    metrics.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        source = load_kube_configuration(metrics)
    except Exception as exc:
        logger.exception("Failed to connect to Kubernetes cluster")
        raise SystemExit(1) from exc
    logger.info("Connected to Kubernetes cluster using %s configuration", source)
    core_api = build_core_api()

    ready = threading.Event()
    health_server = start_health_server(
        ready=ready,
        port=cfg.metrics_port,
        registry=metrics.registry,
        version_text=version_text(),
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logging.getLogger(__name__).info("Received signal %d, initiating graceful shutdown", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    rate_limiter = TokenBucket(cfg.rate_limit, metrics=metrics)
    namespace = cfg.namespace
    exclude_label = cfg.exclude_namespace_label

    tasks: list[BackgroundTask] = [
        start_periodic_reconciler(
            shutdown_event,
            core_api,
            namespace,
            exclude_label,
            cfg.sync_interval_minutes,
            rate_limit=rate_limiter,
            metrics=metrics,
            prune_orphans=cfg.prune_orphans,
            ready=ready,
        )
    ]
    if cfg.enable_namespace_watcher:
        tasks.append(
            start_namespace_watcher(
                shutdown_event,
                core_api,
                namespace,
                exclude_label,
                rate_limit=rate_limiter,
                metrics=metrics,
            )
        )
    if cfg.enable_secret_watcher:
        tasks.extend(
            start_source_secret_watcher(
                shutdown_event,
                core_api,
                namespace,
                exclude_label,
                cfg.debounce_seconds,
                rate_limiter,
                metrics=metrics,
            )
        )
    else:
        logger.info("Secret watcher disabled; relying on periodic reconciliation only")
    tasks.append(start_status_updater(shutdown_event, core_api, namespace, exclude_label, metrics))

    while not shutdown_event.wait(timeout=1):
        pass

    shutdown_tasks(tasks, shutdown_event, grace_seconds=SHUTDOWN_GRACE_SECONDS)
    health_server.shutdown()
    logger.info("Shutdown complete")


if __name__ == "__main__":
    main()
