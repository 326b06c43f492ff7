"""Shared informers and informer factories.

An informer lists every object of one resource kind in a namespace, then
follows the watch stream for that kind.  It keeps a local cache keyed by
``namespace/name`` and notifies registered :class:`ResourceEventHandler`
objects of adds, updates and deletes.

Informer factories hand out one informer per kind, so every controller of a
controller group that asks for the same kind shares a single watch and cache.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

import structlog
from kubernetes import watch
from kubernetes.client import ApiException, BatchV1Api, CoreV1Api, CustomObjectsApi

from pgo_controller.models import (
    CRD_GROUP,
    CRD_VERSION,
    JOBS,
    PGCLUSTERS,
    PGPOLICIES,
    PGREPLICAS,
    PGTASKS,
    PODS,
    EventType,
    ResourceKind,
    meta,
    meta_namespace_key,
)
from pgo_controller.scope import Scope

logger = structlog.get_logger(__name__)

_MAX_BACKOFF = 30.0
_SYNC_POLL_INTERVAL = 0.1
# Client-side read timeout on top of the server-side watch timeout.
_WATCH_REQUEST_SLACK = 10


@dataclass
class ResourceEventHandler:
    """Callbacks for informer notifications.  Any of them may be left unset."""

    on_add: Callable[[Any], None] | None = None
    on_update: Callable[[Any, Any], None] | None = None
    on_delete: Callable[[Any], None] | None = None


def _list_items(resp: Any) -> tuple[list[Any], str | None]:
    """Return ``(items, resource_version)`` from a dict or typed list response."""
    if isinstance(resp, dict):
        return list(resp.get("items") or []), meta(resp, "resourceVersion")
    return list(resp.items or []), meta(resp, "resourceVersion")


class SharedInformer:
    """List+watch cache for one resource kind in one namespace.

    Parameters
    ----------
    kind:
        The resource kind being watched.
    list_func:
        A ``kubernetes.client`` list method (e.g. ``CoreV1Api.list_namespaced_pod``),
        usable with :class:`kubernetes.watch.Watch`.
    namespace:
        Namespace to list and watch.
    list_kwargs:
        Extra keyword arguments passed on every list and watch call.
    resync_period:
        Seconds between re-deliveries of every cached object as an update.
        ``0`` disables periodic resync.
    watch_timeout:
        Server-side timeout of each watch request.
    """

    def __init__(
        self,
        kind: ResourceKind,
        list_func: Callable[..., Any],
        namespace: str,
        list_kwargs: dict[str, Any] | None = None,
        resync_period: float = 0,
        watch_timeout: int = 300,
    ) -> None:
        self.kind = kind
        self.namespace = namespace
        self._list_func = list_func
        self._list_kwargs = list_kwargs or {}
        self._resync_period = resync_period
        self._watch_timeout = watch_timeout

        self._lock = threading.RLock()
        self._cache: dict[str, Any] = {}
        self._handlers: list[ResourceEventHandler] = []
        self._resource_version: str | None = None
        self._has_synced = False
        self._active_watch: watch.Watch | None = None
        self._next_resync: float | None = None

    # -- public interface -------------------------------------------------------

    @property
    def has_synced(self) -> bool:
        """``True`` once the initial list has populated the cache."""
        return self._has_synced

    def add_event_handler(self, handler: ResourceEventHandler) -> None:
        """Register *handler*.  Objects already cached are replayed to it as adds."""
        with self._lock:
            self._handlers.append(handler)
            existing = list(self._cache.values())
        if handler.on_add is not None:
            for obj in existing:
                self._call(handler.on_add, obj)

    def get(self, key: str) -> Any | None:
        """Return the cached object for a ``namespace/name`` key, if present."""
        with self._lock:
            return self._cache.get(key)

    def list(self) -> list[Any]:
        with self._lock:
            return list(self._cache.values())

    def run(self, scope: Scope) -> None:
        """List, then watch, until *scope* is cancelled.

        Relists after an expired resource version (HTTP 410) and backs off
        exponentially after any other error.
        """
        scope.on_cancel(self._stop_watch)
        logger.debug("informer_started", kind=str(self.kind), namespace=self.namespace)

        backoff = 1.0
        while not scope.cancelled:
            try:
                if self._resource_version is None:
                    self._relist()
                self._watch(scope)
                backoff = 1.0
            except ApiException as exc:
                self._resource_version = None
                if exc.status == 410:
                    logger.debug("informer_resource_version_expired", kind=str(self.kind), namespace=self.namespace)
                    continue
                logger.warning(
                    "informer_watch_error",
                    kind=str(self.kind),
                    namespace=self.namespace,
                    status=exc.status,
                    reason=exc.reason,
                )
                scope.wait(backoff)
                backoff = min(backoff * 2, _MAX_BACKOFF)
            except Exception:
                self._resource_version = None
                if scope.cancelled:
                    break
                logger.exception("informer_error", kind=str(self.kind), namespace=self.namespace)
                scope.wait(backoff)
                backoff = min(backoff * 2, _MAX_BACKOFF)

        logger.debug("informer_stopped", kind=str(self.kind), namespace=self.namespace)

    # -- list / watch -----------------------------------------------------------

    def _relist(self) -> None:
        resp = self._list_func(namespace=self.namespace, **self._list_kwargs)
        items, resource_version = _list_items(resp)
        self._replace(items, resource_version)

    def _replace(self, items: list[Any], resource_version: str | None) -> None:
        """Swap in a fresh listing and notify handlers of the differences.

        Items without a name cannot be keyed; they are logged and left out.
        """
        fresh: dict[str, Any] = {}
        for item in items:
            key = self._key(item)
            if key is not None:
                fresh[key] = item
        with self._lock:
            previous = self._cache
            self._cache = fresh
            self._resource_version = resource_version or ""
            self._has_synced = True
            if self._resync_period > 0 and self._next_resync is None:
                self._next_resync = time.monotonic() + self._resync_period

        for key, old in previous.items():
            if key not in fresh:
                self._dispatch_delete(old)
        for key, obj in fresh.items():
            old = previous.get(key)
            if old is None:
                self._dispatch_add(obj)
            elif meta(old, "resourceVersion") != meta(obj, "resourceVersion"):
                self._dispatch_update(old, obj)

    def _watch(self, scope: Scope) -> None:
        timeout = self._watch_timeout
        if self._resync_period > 0:
            timeout = max(1, min(timeout, int(self._resync_period)))

        if scope.cancelled:
            return
        w = watch.Watch()
        with self._lock:
            self._active_watch = w
        try:
            for event in w.stream(
                self._list_func,
                namespace=self.namespace,
                resource_version=self._resource_version or None,
                timeout_seconds=timeout,
                _request_timeout=timeout + _WATCH_REQUEST_SLACK,
                **self._list_kwargs,
            ):
                if scope.cancelled:
                    break
                self._handle_event(event)
                self._maybe_resync()
        finally:
            w.stop()
            with self._lock:
                self._active_watch = None
        self._maybe_resync()

    def _stop_watch(self) -> None:
        with self._lock:
            active = self._active_watch
        if active is not None:
            active.stop()

    def _handle_event(self, event: dict[str, Any]) -> None:
        """Apply a single watch event to the cache and notify handlers."""
        event_type = event.get("type", "")
        obj = event.get("object")
        if obj is None:
            return

        if event_type == EventType.ERROR:
            code = obj.get("code") if isinstance(obj, dict) else getattr(obj, "code", None)
            raise ApiException(status=code or 500, reason="watch error event")

        resource_version = meta(obj, "resourceVersion")
        if event_type == EventType.BOOKMARK:
            if resource_version:
                self._resource_version = resource_version
            return

        key = self._key(obj)
        if key is None:
            return
        with self._lock:
            old = self._cache.get(key)
            if event_type == EventType.DELETED:
                self._cache.pop(key, None)
            else:
                self._cache[key] = obj
            if resource_version:
                self._resource_version = resource_version

        if event_type == EventType.DELETED:
            self._dispatch_delete(old if old is not None else obj)
        elif old is None:
            self._dispatch_add(obj)
        else:
            self._dispatch_update(old, obj)

    def _key(self, obj: Any) -> str | None:
        try:
            return meta_namespace_key(obj)
        except ValueError:
            logger.warning("informer_unkeyable_object", kind=str(self.kind), namespace=self.namespace)
            return None

    def _maybe_resync(self) -> None:
        if self._resync_period <= 0:
            return
        now = time.monotonic()
        with self._lock:
            if self._next_resync is None or now < self._next_resync:
                return
            self._next_resync = now + self._resync_period
            cached = list(self._cache.values())
        logger.debug("informer_resync", kind=str(self.kind), namespace=self.namespace, count=len(cached))
        for obj in cached:
            self._dispatch_update(obj, obj)

    # -- dispatch ---------------------------------------------------------------

    def _snapshot_handlers(self) -> list[ResourceEventHandler]:
        with self._lock:
            return list(self._handlers)

    def _dispatch_add(self, obj: Any) -> None:
        for handler in self._snapshot_handlers():
            if handler.on_add is not None:
                self._call(handler.on_add, obj)

    def _dispatch_update(self, old: Any, new: Any) -> None:
        for handler in self._snapshot_handlers():
            if handler.on_update is not None:
                self._call(handler.on_update, old, new)

    def _dispatch_delete(self, obj: Any) -> None:
        for handler in self._snapshot_handlers():
            if handler.on_delete is not None:
                self._call(handler.on_delete, obj)

    def _call(self, callback: Callable[..., None], *args: Any) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception("event_handler_error", kind=str(self.kind), namespace=self.namespace)


class SharedInformerFactory:
    """Creates and starts at most one informer per resource kind for a namespace."""

    def __init__(self, namespace: str, resync_period: float = 0, watch_timeout: int = 300) -> None:
        self.namespace = namespace
        self.resync_period = resync_period
        self.watch_timeout = watch_timeout
        self._lock = threading.Lock()
        self._informers: dict[ResourceKind, SharedInformer] = {}
        self._threads: dict[ResourceKind, threading.Thread] = {}

    @property
    def informers(self) -> dict[ResourceKind, SharedInformer]:
        with self._lock:
            return dict(self._informers)

    def informer_for(self, kind: ResourceKind, list_func: Callable[..., Any], **list_kwargs: Any) -> SharedInformer:
        """Return the informer for *kind*, creating it on first use."""
        with self._lock:
            informer = self._informers.get(kind)
            if informer is None:
                informer = SharedInformer(
                    kind,
                    list_func,
                    self.namespace,
                    list_kwargs=list_kwargs,
                    resync_period=self.resync_period,
                    watch_timeout=self.watch_timeout,
                )
                self._informers[kind] = informer
            return informer

    def start(self, scope: Scope) -> None:
        """Start every informer that is not running yet.  Returns immediately."""
        with self._lock:
            pending = [(k, i) for k, i in self._informers.items() if k not in self._threads]
            for kind, informer in pending:
                t = threading.Thread(
                    target=informer.run,
                    args=(scope,),
                    daemon=True,
                    name=f"informer-{kind.plural}-{self.namespace}",
                )
                self._threads[kind] = t
                t.start()

    def wait_for_cache_sync(self, scope: Scope, timeout: float | None = None) -> dict[str, bool]:
        """Block until every informer has synced, *scope* is cancelled, or *timeout* passes."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            synced = {str(kind): informer.has_synced for kind, informer in self.informers.items()}
            if all(synced.values()) or scope.cancelled:
                return synced
            if deadline is not None and time.monotonic() >= deadline:
                return synced
            scope.wait(_SYNC_POLL_INTERVAL)

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the informer threads to exit, sharing *timeout* among them.

        Returns ``False`` if any thread is still alive afterwards.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._lock:
            threads = list(self._threads.values())
        for t in threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            t.join(remaining)
        return not any(t.is_alive() for t in threads)


class CustomResourceInformerFactory(SharedInformerFactory):
    """Informers for the operator's custom resources (``pgclusters``, ``pgtasks``, ...)."""

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        namespace: str,
        group: str = CRD_GROUP,
        version: str = CRD_VERSION,
        resync_period: float = 0,
        watch_timeout: int = 300,
    ) -> None:
        super().__init__(namespace, resync_period, watch_timeout)
        self._custom_api = custom_api
        self.group = group
        self.version = version

    def _custom(self, kind: ResourceKind) -> SharedInformer:
        kind = kind.model_copy(update={"group": self.group, "version": self.version})
        return self.informer_for(
            kind,
            self._custom_api.list_namespaced_custom_object,
            group=kind.group,
            version=kind.version,
            plural=kind.plural,
        )

    def pgclusters(self) -> SharedInformer:
        return self._custom(PGCLUSTERS)

    def pgreplicas(self) -> SharedInformer:
        return self._custom(PGREPLICAS)

    def pgtasks(self) -> SharedInformer:
        return self._custom(PGTASKS)

    def pgpolicies(self) -> SharedInformer:
        return self._custom(PGPOLICIES)


class KubeInformerFactory(SharedInformerFactory):
    """Informers for built-in resources (pods and jobs)."""

    def __init__(
        self,
        core_api: CoreV1Api,
        batch_api: BatchV1Api,
        namespace: str,
        resync_period: float = 0,
        watch_timeout: int = 300,
    ) -> None:
        super().__init__(namespace, resync_period, watch_timeout)
        self._core_api = core_api
        self._batch_api = batch_api

    def pods(self) -> SharedInformer:
        return self.informer_for(PODS, self._core_api.list_namespaced_pod)

    def jobs(self) -> SharedInformer:
        return self.informer_for(JOBS, self._batch_api.list_namespaced_job)
