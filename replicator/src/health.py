from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, CollectorRegistry, generate_latest

LOGGER = logging.getLogger(__name__)

_TEXT = "text/plain; charset=utf-8"
_INDEX_PAGE = b"""<html>
<head><title>push-to-k8s</title></head>
<body>
<h1>push-to-k8s</h1>
<p><a href="/metrics">Metrics</a></p>
<p><a href="/healthz">Health</a></p>
<p><a href="/readyz">Ready</a></p>
<p><a href="/version">Version</a></p>
</body>
</html>"""


class _HealthHandler(BaseHTTPRequestHandler):
    """Serve liveness, readiness, build version and Prometheus metrics.

    ``/readyz`` turns 200 once the first full reconciliation has finished.
    """

    ready_event: threading.Event
    metrics_registry: CollectorRegistry
    version_body: bytes

    def _send(self, status: int, body: bytes, content_type: str = _TEXT) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _readiness(self) -> tuple[int, bytes]:
        if self.ready_event.is_set():
            return 200, b"ready=true"
        return 503, b"ready=false"

    def do_GET(self) -> None:
        path = self.path.split("?", 1)[0]
        if path == "/healthz":
            self._send(200, b"ok")
        elif path == "/readyz":
            self._send(*self._readiness())
        elif path == "/version":
            self._send(200, self.version_body)
        elif path == "/metrics":
            self._send(200, generate_latest(self.metrics_registry), CONTENT_TYPE_LATEST)
        elif path == "/":
            self._send(200, _INDEX_PAGE, "text/html; charset=utf-8")
        else:
            self._send(404, b"not found")

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def make_health_handler(
    ready: threading.Event,
    registry: CollectorRegistry = REGISTRY,
    version_text: str = "unknown",
) -> type[_HealthHandler]:
    """Bind readiness, registry and version text onto a handler class.

    The stdlib server instantiates handlers itself, so per-server state
    lives on the class.
    """

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready
        metrics_registry = registry
        version_body = version_text.encode()

    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event,
    port: int,
    registry: CollectorRegistry = REGISTRY,
    version_text: str = "unknown",
    host: str = "0.0.0.0",  # noqa: S104
) -> ThreadingHTTPServer:
    """Serve the health and metrics endpoints from a daemon thread."""
    server = ThreadingHTTPServer(
        (host, port), make_health_handler(ready, registry=registry, version_text=version_text)
    )
    server.daemon_threads = True
    server.block_on_close = False
    thread = threading.Thread(target=server.serve_forever, name="health-server", daemon=True)
    thread.start()
    LOGGER.info("Serving /healthz, /readyz, /version and /metrics on %s:%d", host, port)
    return server
