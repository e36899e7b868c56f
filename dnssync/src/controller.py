from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from dnssync.src.config import ControllerConfig
from dnssync.src.kube import KubernetesResourceClient
from dnssync.src.leader import LeadershipGate
from dnssync.src.reconciler import IngressDNSReconciler, ReconcileResult
from dnssync.src.scope import ScopeFilter
from dnssync.src.watches import ResourceWatcher, build_watch_targets
from dnssync.src.workqueue import ReconcileQueue

LOGGER = logging.getLogger(__name__)

WORKER_POLL_SECONDS = 1.0
WATCHER_JOIN_TIMEOUT_SECONDS = 5.0


class IngressSyncController:
    """Runs the watchers and the single reconcile worker.

    Watchers feed one coalesced work item into the queue; the worker runs
    one pass per dequeue on the calling thread, so at most one pass runs at
    a time.  A failed pass is re-queued after the delay it reports.  The
    worker exits when a watcher has stopped on an authorization error,
    because the caches it relies on can no longer be trusted.
    """

    def __init__(
        self,
        reconciler: IngressDNSReconciler,
        watchers: list[ResourceWatcher],
        queue: ReconcileQueue,
        logger: logging.Logger | None = None,
    ) -> None:
        self.reconciler = reconciler
        self.watchers = watchers
        self.queue = queue
        self.logger = logger or LOGGER
        self.last_result: ReconcileResult | None = None
        self._threads: list[threading.Thread] = []
        self._external_stop = threading.Event()

    @property
    def ready(self) -> bool:
        return bool(self.watchers) and all(
            watcher.synced.is_set() and not watcher.failed.is_set() for watcher in self.watchers
        )

    @property
    def failed(self) -> bool:
        return any(watcher.failed.is_set() for watcher in self.watchers)

    def enqueue(self) -> None:
        self.queue.add()

    def on_started_leading(self) -> None:
        self.logger.info("Leadership acquired; scheduling a full reconciliation")
        self.queue.add()

    def on_stopped_leading(self) -> None:
        self.logger.info("Leadership lost; reconciliation paused until re-elected")

    def request_stop(self) -> None:
        self._external_stop.set()
        for watcher in self.watchers:
            watcher.request_stop()
        self.queue.shut_down()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _start_watchers(self, stop_event: threading.Event) -> None:
        for watcher in self.watchers:
            thread = threading.Thread(
                target=watcher.run,
                args=(stop_event,),
                name=f"watch-{watcher.target.name}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def process_next(self, timeout: float | None = WORKER_POLL_SECONDS) -> ReconcileResult | None:
        """Run at most one pass. Returns None when nothing was dequeued."""
        if not self.queue.get(timeout=timeout):
            return None
        try:
            result = self.reconciler.reconcile()
        except Exception as exc:
            self.logger.exception("Unexpected error during reconciliation")
            result = ReconcileResult(
                requeue_after_seconds=self.reconciler.config.requeue_after_seconds,
                error=exc,
            )
        finally:
            self.queue.done()

        self.last_result = result
        if result.requeue_after_seconds is not None:
            self.queue.add_after(result.requeue_after_seconds)
        return result

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        stop_event = shutdown_event or threading.Event()
        self._start_watchers(stop_event)
        self.queue.add()

        try:
            while not self._should_stop(stop_event):
                if self.failed:
                    self.logger.error(
                        "A watcher stopped on an authorization error; shutting the controller down"
                    )
                    break
                self.process_next()
        finally:
            for watcher in self.watchers:
                watcher.request_stop()
            self.queue.shut_down()
            for thread in self._threads:
                thread.join(timeout=WATCHER_JOIN_TIMEOUT_SECONDS)
            self._threads = []
            self.logger.info("Controller loop stopped")


def build_controller(
    resources: KubernetesResourceClient,
    config: ControllerConfig,
    leadership: LeadershipGate,
    queue: ReconcileQueue | None = None,
    watcher_factory: Callable[..., ResourceWatcher] = ResourceWatcher,
) -> IngressSyncController:
    """Wire the reconciler, the queue and one watcher per watch target."""
    scope_filter = ScopeFilter(config.scope)
    queue = queue or ReconcileQueue()
    reconciler = IngressDNSReconciler(resources, config, leadership, scope_filter=scope_filter)
    watchers = [
        watcher_factory(target, queue.add)
        for target in build_watch_targets(resources, config, scope_filter)
    ]
    return IngressSyncController(reconciler, watchers, queue)
