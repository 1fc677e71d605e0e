from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from replicator.src.kube import API_TIMEOUT_SECONDS, is_access_denied
from replicator.src.metrics import ReplicatorMetrics


class CacheSyncError(RuntimeError):
    """Raised when the initial list never succeeds; fatal to one watcher only."""


def _object_name(obj: Any) -> str | None:
    name = getattr(getattr(obj, "metadata", None), "name", None)
    return name if isinstance(name, str) and name else None


class ResourceInformer:
    """List-then-watch a resource and dispatch add/update/delete callbacks.

    The informer keeps a local cache keyed by object name.  The initial list
    seeds the cache without dispatching anything and acts as the sync
    barrier: ``synced`` is set once it succeeds.  After that:

    - ``ADDED`` for an unknown name calls ``on_add(obj)``.
    - ``ADDED``/``MODIFIED`` for a cached name calls ``on_update(old, new)``.
    - ``DELETED`` calls ``on_delete(obj)``.

    On ``410 Gone`` the informer re-lists and diffs the fresh listing against
    the cache, dispatching synthetic events for whatever changed while the
    watch was disconnected.  Other watch errors reconnect with jittered
    exponential backoff capped at 30 s.

    Objects that are not an ``object_type`` instance, or have no
    ``metadata.name``, are logged and dropped.  A callback that raises is
    logged and the loop carries on with the next event.
    """

    def __init__(
        self,
        kind: str,
        list_fn: Callable[..., Any],
        *,
        list_kwargs: dict[str, Any] | None = None,
        object_type: type | None = None,
        on_add: Callable[[Any], None] | None = None,
        on_update: Callable[[Any, Any], None] | None = None,
        on_delete: Callable[[Any], None] | None = None,
        metrics: ReplicatorMetrics | None = None,
        logger: logging.Logger | None = None,
        sync_timeout_seconds: float = 60.0,
        watch_timeout_seconds: int = 30,
        watch_factory: Callable[[], Any] = watch.Watch,
        monotonic_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        self.kind = kind
        self.list_fn = list_fn
        self.list_kwargs = dict(list_kwargs or {})
        self.object_type = object_type
        self.on_add = on_add
        self.on_update = on_update
        self.on_delete = on_delete
        self.metrics = metrics
        self.logger = logger or logging.getLogger(__name__)
        self.sync_timeout_seconds = sync_timeout_seconds
        self.watch_timeout_seconds = watch_timeout_seconds
        self.watch_factory = watch_factory
        self._monotonic = monotonic_fn

        self._cache: dict[str, Any] = {}
        self.synced = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: Any | None = None
        self._watcher_lock = threading.Lock()

    def names(self) -> list[str]:
        return sorted(self._cache)

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _count_error(self) -> None:
        if self.metrics is not None:
            self.metrics.watch_errors_total.labels(kind=self.kind).inc()

    def _list(self) -> Any:
        return self.list_fn(**self.list_kwargs, _request_timeout=API_TIMEOUT_SECONDS)

    def _accepts(self, obj: Any, event_type: str) -> str | None:
        if self.object_type is not None and not isinstance(obj, self.object_type):
            self.logger.error(
                "Dropping %s %s event with unexpected payload type %s",
                self.kind,
                event_type,
                type(obj).__name__,
            )
            return None
        name = _object_name(obj)
        if name is None:
            self.logger.error("Dropping %s %s event without metadata.name", self.kind, event_type)
        return name

    def _dispatch(self, event_type: str, obj: Any) -> None:
        name = self._accepts(obj, event_type)
        if name is None:
            return
        try:
            if event_type in {"ADDED", "MODIFIED"}:
                old = self._cache.get(name)
                self._cache[name] = obj
                if old is None:
                    if self.on_add is not None:
                        self.on_add(obj)
                elif self.on_update is not None:
                    self.on_update(old, obj)
            elif event_type == "DELETED":
                self._cache.pop(name, None)
                if self.on_delete is not None:
                    self.on_delete(obj)
        except Exception:
            self.logger.exception(
                "Handler failed for %s %s event on %s", self.kind, event_type, name
            )

    def _replace_cache(self, listing: Any, *, dispatch: bool) -> str | None:
        """Swap the cache for a fresh listing and return its resourceVersion.

        With ``dispatch=True`` the difference between the old cache and the
        listing is delivered as add/update/delete callbacks.
        """
        fresh: dict[str, Any] = {}
        for obj in getattr(listing, "items", None) or []:
            name = self._accepts(obj, "LIST")
            if name is not None:
                fresh[name] = obj

        if dispatch:
            for name in [n for n in self._cache if n not in fresh]:
                self._dispatch("DELETED", self._cache[name])
            for obj in fresh.values():
                self._dispatch("MODIFIED", obj)
        self._cache = fresh
        return getattr(getattr(listing, "metadata", None), "resource_version", None)

    def wait_for_cache_sync(self, stop_event: threading.Event) -> str | None:
        """Run the initial list, retrying transient failures.

        Raises :class:`CacheSyncError` on 401/403 or once
        ``sync_timeout_seconds`` have passed without a successful list.
        """
        deadline = self._monotonic() + self.sync_timeout_seconds
        backoff_seconds = 1
        while not self._should_stop(stop_event):
            try:
                resource_version = self._replace_cache(self._list(), dispatch=False)
                self.synced.set()
                self.logger.info(
                    "%s cache synced with %d object(s)", self.kind.capitalize(), len(self._cache)
                )
                return resource_version
            except ApiException as exc:
                if is_access_denied(exc):
                    raise CacheSyncError(
                        f"Kubernetes API access denied listing {self.kind} objects "
                        f"(status={exc.status}); check RBAC"
                    ) from exc
                self.logger.exception("Initial %s list failed", self.kind)
                self._count_error()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.kind)
                self._count_error()

            if self._monotonic() >= deadline:
                raise CacheSyncError(
                    f"{self.kind} cache did not sync within {self.sync_timeout_seconds:.0f}s"
                )
            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop_event.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)
        return None

    def run(self, stop_event: threading.Event) -> None:
        """Sync the cache, then watch until *stop_event* is set."""
        self._external_stop.clear()
        resource_version = self.wait_for_cache_sync(stop_event)
        if self._should_stop(stop_event):
            return
        self.logger.info("%s watcher started successfully", self.kind.capitalize())

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop_event):
            watcher = self.watch_factory()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0 and self.metrics is not None:
                    self.metrics.watch_reconnects_total.labels(kind=self.kind).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    **self.list_kwargs,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                    _request_timeout=self.watch_timeout_seconds + API_TIMEOUT_SECONDS,
                )

                stream_failed = False
                for event in stream:
                    if self._should_stop(stop_event):
                        break

                    event_type = str(event.get("type", ""))
                    obj = event.get("object")
                    if event_type == "ERROR":
                        self.logger.warning("%s watch returned an error event: %s", self.kind, obj)
                        self._count_error()
                        stream_failed = True
                        break

                    metadata = getattr(obj, "metadata", None)
                    if metadata is not None and getattr(metadata, "resource_version", None):
                        resource_version = metadata.resource_version
                    if event_type == "BOOKMARK" or obj is None:
                        continue
                    self._dispatch(event_type, obj)

                if stream_failed:
                    jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                    stop_event.wait(timeout=jittered)
                    backoff_seconds = min(backoff_seconds * 2, 30)
                else:
                    backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: the resourceVersion was compacted away; re-list and resume.
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", self.kind)
                    try:
                        resource_version = self._replace_cache(self._list(), dispatch=True)
                    except Exception:
                        self.logger.exception("Failed to re-list %s objects after 410", self.kind)
                        self._count_error()
                        resource_version = None
                    continue

                self.logger.exception("Kubernetes API %s watch error", self.kind)
                self._count_error()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop_event.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected %s watch error", self.kind)
                self._count_error()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop_event.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.logger.info("%s watcher received shutdown signal", self.kind.capitalize())
