from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Protocol

from kubernetes import watch
from kubernetes.client import ApiException

from targetconfig.src.metrics import METRICS
from targetconfig.src.workqueue import SingleKeyQueue


@dataclass(frozen=True)
class LiveObject:
    """A delete notification that still carries the deleted object."""

    obj: Any


@dataclass(frozen=True)
class Tombstone:
    """A delete observed only after the fact, e.g. across a watch re-list.

    ``last_known`` is the last state seen for ``key``, or ``None`` when the
    object was never seen.
    """

    key: str
    last_known: Any | None


DeletedObject = LiveObject | Tombstone


def _field(obj: Any, attr: str, key: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, attr, None)


def object_name(obj: Any) -> str | None:
    return _field(_field(obj, "metadata", "metadata"), "name", "name")


def object_key(obj: Any) -> str | None:
    metadata = _field(obj, "metadata", "metadata")
    name = _field(metadata, "name", "name")
    if not name:
        return None
    namespace = _field(metadata, "namespace", "namespace")
    return f"{namespace}/{name}" if namespace else name


def object_resource_version(obj: Any) -> str | None:
    return _field(_field(obj, "metadata", "metadata"), "resource_version", "resourceVersion")


class EventHandler(Protocol):
    def on_add(self, obj: Any) -> None: ...

    def on_update(self, old: Any, new: Any) -> None: ...

    def on_delete(self, deleted: DeletedObject) -> None: ...


class EnqueueHandler:
    """Turns every notification from one source into a request for the singleton key."""

    def __init__(self, queue: SingleKeyQueue, source: str) -> None:
        self.queue = queue
        self.source = source

    def _enqueue(self) -> None:
        METRICS.notifications_total.labels(source=self.source).inc()
        self.queue.add()

    def on_add(self, obj: Any) -> None:
        self._enqueue()

    def on_update(self, old: Any, new: Any) -> None:
        self._enqueue()

    def on_delete(self, deleted: DeletedObject) -> None:
        self._enqueue()


class NamespaceEventHandler:
    """Enqueues only for namespaces the controller writes into.

    Adds and updates whose name cannot be read still enqueue, since an extra
    cycle is harmless.  A delete whose namespace cannot be identified is
    logged and dropped.
    """

    def __init__(
        self,
        queue: SingleKeyQueue,
        interesting_namespaces: Iterable[str],
        source: str = "namespaces",
        logger: logging.Logger | None = None,
    ) -> None:
        self.queue = queue
        self.interesting_namespaces = frozenset(interesting_namespaces)
        self.source = source
        self.logger = logger or logging.getLogger(__name__)

    def _enqueue_if_interesting(self, name: str | None) -> None:
        if name is None or name in self.interesting_namespaces:
            METRICS.notifications_total.labels(source=self.source).inc()
            self.queue.add()

    def on_add(self, obj: Any) -> None:
        self._enqueue_if_interesting(object_name(obj))

    def on_update(self, old: Any, new: Any) -> None:
        self._enqueue_if_interesting(object_name(new) or object_name(old))

    def on_delete(self, deleted: DeletedObject) -> None:
        if isinstance(deleted, LiveObject):
            name = object_name(deleted.obj)
        elif deleted.last_known is None:
            self.logger.error("Couldn't get object from tombstone %r", deleted.key)
            METRICS.tombstones_dropped_total.inc()
            return
        else:
            name = object_name(deleted.last_known)
        if name is None:
            self.logger.error("Tombstone %r contained an object without a namespace name", deleted)
            METRICS.tombstones_dropped_total.inc()
            return
        if name in self.interesting_namespaces:
            METRICS.notifications_total.labels(source=self.source).inc()
            self.queue.add()


def _list_items(listing: Any) -> list[Any]:
    if isinstance(listing, dict):
        return list(listing.get("items") or [])
    return list(getattr(listing, "items", None) or [])


def _list_resource_version(listing: Any) -> str | None:
    return object_resource_version(listing)


class ResourceWatcher:
    """List-then-watch one resource collection and feed notifications to a handler.

    The watcher remembers the last-seen object per key.  That cache is what
    lets a ``410 Gone`` re-list report the objects that disappeared while
    the stream was down as :class:`Tombstone` deletions.

    ``401`` / ``403`` stop the watcher with an error log, as retrying cannot
    fix missing RBAC.  Other failures back off exponentially with jitter,
    capped at 30 s.
    """

    def __init__(
        self,
        source: str,
        list_fn: Callable[..., Any],
        handler: EventHandler,
        list_kwargs: dict[str, Any] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.source = source
        self.list_fn = list_fn
        self.handler = handler
        self.list_kwargs = dict(list_kwargs or {})
        self.logger = logger or logging.getLogger(__name__)
        self.synced = threading.Event()
        self._known: dict[str, Any] = {}
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def sync_from_list(self, listing: Any) -> str | None:
        """Reconcile the cache with a full listing and notify about every difference.

        Returns the listing's resourceVersion to resume watching from.
        """
        fresh: dict[str, Any] = {}
        for item in _list_items(listing):
            key = object_key(item)
            if key is not None:
                fresh[key] = item

        for key, item in fresh.items():
            previous = self._known.get(key)
            if previous is None:
                self.handler.on_add(item)
            elif object_resource_version(previous) != object_resource_version(item):
                self.handler.on_update(previous, item)

        for key in [key for key in self._known if key not in fresh]:
            self.handler.on_delete(Tombstone(key=key, last_known=self._known[key]))

        self._known = fresh
        return _list_resource_version(listing)

    def handle_event(self, event_type: str, obj: Any) -> None:
        key = object_key(obj)
        if event_type == "ADDED":
            if key is not None:
                self._known[key] = obj
            self.handler.on_add(obj)
        elif event_type == "MODIFIED":
            previous = self._known.get(key) if key is not None else None
            if key is not None:
                self._known[key] = obj
            self.handler.on_update(previous if previous is not None else obj, obj)
        elif event_type == "DELETED":
            if key is not None:
                self._known.pop(key, None)
            self.handler.on_delete(LiveObject(obj))

    def _denied(self, exc: ApiException, stage: str) -> bool:
        if exc.status not in {401, 403}:
            return False
        self.logger.error(
            "Kubernetes API access denied during %s of %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            stage,
            self.source,
            exc.status,
        )
        METRICS.watch_errors_total.labels(source=self.source).inc()
        return True

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        backoff_seconds = 1
        needs_list = True
        watch_stream_count = 0

        while not self._should_stop(stop):
            if needs_list:
                try:
                    resource_version = self.sync_from_list(self.list_fn(**self.list_kwargs))
                    needs_list = False
                    self.synced.set()
                    backoff_seconds = 1
                except ApiException as exc:
                    if self._denied(exc, "list"):
                        return
                    self.logger.exception("Listing %s failed", self.source)
                    METRICS.watch_errors_total.labels(source=self.source).inc()
                    self._backoff(stop, backoff_seconds)
                    backoff_seconds = min(backoff_seconds * 2, 30)
                    continue
                except Exception:
                    self.logger.exception("Unexpected error listing %s", self.source)
                    METRICS.watch_errors_total.labels(source=self.source).inc()
                    self._backoff(stop, backoff_seconds)
                    backoff_seconds = min(backoff_seconds * 2, 30)
                    continue

            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(source=self.source).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=30,
                    **self.list_kwargs,
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    version = object_resource_version(obj)
                    if version:
                        resource_version = version
                    self.handle_event(str(event.get("type", "")), obj)
                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: our resourceVersion was compacted away; re-list.
                if exc.status == 410:
                    self.logger.warning("Watch of %s expired, re-listing", self.source)
                    needs_list = True
                    continue
                if self._denied(exc, "watch"):
                    return
                self.logger.exception("Kubernetes API watch error on %s", self.source)
                METRICS.watch_errors_total.labels(source=self.source).inc()
                self._backoff(stop, backoff_seconds)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error on %s", self.source)
                METRICS.watch_errors_total.labels(source=self.source).inc()
                self._backoff(stop, backoff_seconds)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

    @staticmethod
    def _backoff(stop: threading.Event, backoff_seconds: int) -> None:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        stop.wait(timeout=jittered)
