from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from dnssync.src.config import ControllerConfig
from dnssync.src.kube import KubernetesResourceClient
from dnssync.src.metrics import METRICS
from dnssync.src.predicates import (
    DELETED,
    ArtifactEventPredicate,
    EventPredicate,
    IngressEventPredicate,
    ServerConfigEventPredicate,
)
from dnssync.src.retry import is_forbidden
from dnssync.src.scope import ScopeFilter

LOGGER = logging.getLogger(__name__)

WATCH_TIMEOUT_SECONDS = 30
MAX_BACKOFF_SECONDS = 30


@dataclass(frozen=True)
class WatchTarget:
    """One list-then-watch stream: which API list call, with which arguments."""

    name: str
    list_fn: Callable[..., Any]
    predicate: EventPredicate
    kwargs: dict[str, Any] = field(default_factory=dict)


def _object_key(obj: Any) -> tuple[str, str] | None:
    metadata = getattr(obj, "metadata", None)
    name = getattr(metadata, "name", None)
    if not name:
        return None
    return getattr(metadata, "namespace", None) or "", name


def build_watch_targets(
    resources: KubernetesResourceClient,
    config: ControllerConfig,
    scope_filter: ScopeFilter | None = None,
) -> list[WatchTarget]:
    """Return the watches the controller needs for *config*.

    Ingresses are watched cluster-wide when no namespaces are configured and
    otherwise only in the listed namespaces, which keeps both the cache and
    the required RBAC small.  The two CoreDNS ConfigMaps are always watched
    by name in the CoreDNS namespace.
    """
    scope_filter = scope_filter or ScopeFilter(config.scope)
    ingress_predicate = IngressEventPredicate(scope_filter)
    networking = resources.networking_api
    core = resources.core_api
    coredns = config.coredns

    targets: list[WatchTarget] = []
    if scope_filter.watches_all_namespaces:
        targets.append(
            WatchTarget(
                name="ingresses",
                list_fn=networking.list_ingress_for_all_namespaces,
                predicate=ingress_predicate,
            )
        )
    else:
        for namespace in sorted(config.scope.watch_namespaces):
            if not scope_filter.should_watch_namespace(namespace):
                continue
            targets.append(
                WatchTarget(
                    name=f"ingresses/{namespace}",
                    list_fn=networking.list_namespaced_ingress,
                    predicate=ingress_predicate,
                    kwargs={"namespace": namespace},
                )
            )

    targets.append(
        WatchTarget(
            name="corefile",
            list_fn=core.list_namespaced_config_map,
            predicate=ServerConfigEventPredicate(),
            kwargs={
                "namespace": coredns.namespace,
                "field_selector": f"metadata.name={coredns.configmap_name}",
            },
        )
    )
    targets.append(
        WatchTarget(
            name="artifact",
            list_fn=core.list_namespaced_config_map,
            predicate=ArtifactEventPredicate(coredns),
            kwargs={
                "namespace": coredns.namespace,
                "field_selector": f"metadata.name={coredns.dynamic_configmap_name}",
            },
        )
    )
    return targets


class ResourceWatcher:
    """List-then-watch loop for one :class:`WatchTarget`.

    Keeps a local cache of the objects it has seen so update events can be
    judged against the previous version of the object, the way an informer
    does.  Accepted events call ``enqueue``.

    ``410 Gone`` triggers a re-list and one enqueue, since changes may have
    been missed while the stream was behind.  Other transient errors back off
    with jitter (1 s doubling to 30 s).  ``401``/``403`` stop the watcher and
    set ``failed``; retrying cannot fix RBAC.
    """

    def __init__(
        self,
        target: WatchTarget,
        enqueue: Callable[[], None],
        logger: logging.Logger | None = None,
        watch_factory: Callable[[], watch.Watch] = watch.Watch,
    ) -> None:
        self.target = target
        self.enqueue = enqueue
        self.logger = logger or LOGGER
        self.watch_factory = watch_factory
        self.synced = threading.Event()
        self.failed = threading.Event()
        self._cache: dict[tuple[str, str], Any] = {}
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()
        self._external_stop = threading.Event()

    @property
    def resource(self) -> str:
        return self.target.predicate.resource

    def request_stop(self) -> None:
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop: threading.Event) -> bool:
        return stop.is_set() or self._external_stop.is_set()

    def handle_event(self, event_type: str, obj: Any) -> bool:
        """Update the cache with one event and enqueue when the predicate accepts it."""
        key = _object_key(obj)
        if key is None:
            return False
        old = self._cache.get(key)
        if event_type == DELETED:
            self._cache.pop(key, None)
        else:
            self._cache[key] = obj

        accepted = self.target.predicate.should_enqueue(event_type, old, obj)
        METRICS.events_total.labels(
            resource=self.resource, enqueued="true" if accepted else "false"
        ).inc()
        if accepted:
            self.logger.debug(
                "%s event for %s/%s on %s enqueued a reconcile",
                event_type,
                key[0],
                key[1],
                self.target.name,
            )
            self.enqueue()
        return accepted

    def _list(self) -> str | None:
        """Replace the cache with a fresh listing and return its resourceVersion."""
        result = self.target.list_fn(**self.target.kwargs)
        fresh: dict[tuple[str, str], Any] = {}
        for obj in getattr(result, "items", None) or []:
            key = _object_key(obj)
            if key is not None:
                fresh[key] = obj
        self._cache = fresh
        return getattr(getattr(result, "metadata", None), "resource_version", None)

    def _backoff(self, stop: threading.Event, backoff_seconds: int) -> int:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        stop.wait(timeout=jittered)
        return min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)

    def _denied(self, exc: ApiException, during: str) -> None:
        self.logger.error(
            "Kubernetes API access denied during %s of %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            during,
            self.target.name,
            exc.status,
        )
        METRICS.watch_errors_total.labels(resource=self.resource).inc()
        self.synced.clear()
        self.failed.set()

    def run(self, stop: threading.Event) -> None:
        resource_version: str | None = None
        backoff_seconds = 1

        while not self._should_stop(stop):
            try:
                resource_version = self._list()
                self.synced.set()
                self.logger.info(
                    "Listed %d object(s) for %s; watching from resourceVersion %s",
                    len(self._cache),
                    self.target.name,
                    resource_version,
                )
                break
            except ApiException as exc:
                if is_forbidden(exc):
                    self._denied(exc, "initial list")
                    return
                self.logger.exception("Initial list failed for %s", self.target.name)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial list of %s", self.target.name)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
            backoff_seconds = self._backoff(stop, backoff_seconds)

        backoff_seconds = 1
        stream_count = 0
        while not self._should_stop(stop):
            watcher = self.watch_factory()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if stream_count > 0:
                    METRICS.watch_reconnects_total.labels(resource=self.resource).inc()
                stream_count += 1
                stream = watcher.stream(
                    self.target.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=WATCH_TIMEOUT_SECONDS,
                    **self.target.kwargs,
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    metadata = getattr(obj, "metadata", None)
                    if metadata is not None and getattr(metadata, "resource_version", None):
                        resource_version = metadata.resource_version
                    self.handle_event(str(event.get("type", "")), obj)
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning(
                        "Watch resource version expired for %s, re-listing", self.target.name
                    )
                    try:
                        resource_version = self._list()
                        self.enqueue()
                    except ApiException as relist_exc:
                        if is_forbidden(relist_exc):
                            self._denied(relist_exc, "410 re-list")
                            return
                        self.logger.exception("Failed to re-list %s after 410", self.target.name)
                        METRICS.watch_errors_total.labels(resource=self.resource).inc()
                        resource_version = None
                    continue
                if is_forbidden(exc):
                    self._denied(exc, "watch")
                    return
                self.logger.exception("Kubernetes API watch error for %s", self.target.name)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
                backoff_seconds = self._backoff(stop, backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected watch error for %s", self.target.name)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
                backoff_seconds = self._backoff(stop, backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.synced.clear()

