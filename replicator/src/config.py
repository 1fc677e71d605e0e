from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass

LOGGER = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT = 10
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigError(RuntimeError):
    """Raised when a required setting is missing."""


@dataclass(frozen=True)
class ReplicatorConfig:
    """Immutable runtime configuration loaded at startup.

    Attributes:
        namespace: Source namespace holding the ``push-to-k8s=source`` secrets.
        exclude_namespace_label: Label key that opts a namespace out; empty disables it.
        sync_interval_minutes: Minutes between full reconciliation sweeps.
        debounce_seconds: Quiet period before a batch of secret events is applied.
        rate_limit: Maximum API operations per second across every sync path.
        metrics_port: Port for ``/metrics``, ``/healthz``, ``/readyz`` and ``/version``.
        enable_secret_watcher: When False only the periodic sweep runs.
        log_level: Root log level; ``DEBUG=true`` forces ``DEBUG``.
    """

    namespace: str
    exclude_namespace_label: str = ""
    sync_interval_minutes: int = 15
    debounce_seconds: int = 5
    rate_limit: int = DEFAULT_RATE_LIMIT
    metrics_port: int = 9090
    enable_secret_watcher: bool = True
    enable_namespace_watcher: bool = True
    prune_orphans: bool = False
    debug: bool = False
    log_level: str = "INFO"


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    """Read an integer setting, falling back to *default* with a warning.

    Unparsable and out-of-range values do not stop the process.
    """
    raw = values.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        LOGGER.warning("%s=%r is not an integer; using default value %d", name, raw, default)
        return default

    if (minimum is not None and value < minimum) or (maximum is not None and value > maximum):
        LOGGER.warning(
            "%s value %d is out of valid range (%s-%s); using default value %d",
            name,
            value,
            minimum,
            maximum,
            default,
        )
        return default
    return value


def _log_level(values: Mapping[str, str], debug: bool) -> str:
    if debug:
        return "DEBUG"
    level = values.get("LOG_LEVEL", "").strip().upper() or "INFO"
    if level not in LOG_LEVELS:
        LOGGER.warning("LOG_LEVEL=%r is not a known level; using INFO", level)
        return "INFO"
    return level


def load_config(env: Mapping[str, str] | None = None) -> ReplicatorConfig:
    """Load configuration from the environment.

    ``NAMESPACE`` is the only required setting; everything else has a
    default.  Raises :class:`ConfigError` when it is missing.
    """
    values = env if env is not None else os.environ
    debug = parse_bool(values.get("DEBUG"))

    namespace = values.get("NAMESPACE", "").strip()
    if not namespace:
        raise ConfigError(
            "Source namespace is not specified. Set the NAMESPACE environment variable."
        )

    return ReplicatorConfig(
        namespace=namespace,
        exclude_namespace_label=values.get("EXCLUDE_NAMESPACE_LABEL", "").strip(),
        sync_interval_minutes=env_int(values, "SYNC_INTERVAL", 15, minimum=1, maximum=1440),
        debounce_seconds=env_int(
            values, "SECRET_SYNC_DEBOUNCE_SECONDS", 5, minimum=1, maximum=60
        ),
        rate_limit=env_int(
            values, "SECRET_SYNC_RATE_LIMIT", DEFAULT_RATE_LIMIT, minimum=1, maximum=100
        ),
        metrics_port=env_int(values, "METRICS_PORT", 9090, minimum=1, maximum=65535),
        enable_secret_watcher=parse_bool(values.get("ENABLE_SECRET_WATCHER"), default=True),
        enable_namespace_watcher=parse_bool(values.get("ENABLE_NAMESPACE_WATCHER"), default=True),
        prune_orphans=parse_bool(values.get("PRUNE_ORPHANS")),
        debug=debug,
        log_level=_log_level(values, debug),
    )
