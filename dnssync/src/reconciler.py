from __future__ import annotations

import logging
import time
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from kubernetes.client import ApiException

from dnssync.src.artifact import generate_rewrite_rules, parse_rewrite_hosts
from dnssync.src.config import ControllerConfig
from dnssync.src.configmap import ConfigMapMutator
from dnssync.src.corefile import CorefileMutator
from dnssync.src.kube import KubernetesResourceClient
from dnssync.src.leader import LeadershipGate
from dnssync.src.metrics import METRICS
from dnssync.src.retry import (
    CleanupError,
    RetryableSyncError,
    SyncError,
    classify_api_exception,
)
from dnssync.src.scope import ScopeFilter
from dnssync.src.workload import WorkloadMutator

LOGGER = logging.getLogger(__name__)


class Phase(str, Enum):
    IDLE = "idle"
    LISTING = "listing"
    FILTERING = "filtering"
    GENERATING = "generating"
    CONVERGING_ARTIFACT = "converging_artifact"
    CONVERGING_TEXT_CONFIG = "converging_text_config"
    CONVERGING_WORKLOAD = "converging_workload"
    RETRY_SCHEDULED = "retry_scheduled"


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one reconciliation pass.

    A pass either succeeds (``error is None``) or fails in a way a later
    pass may fix, in which case ``requeue_after_seconds`` says when to try
    again.  ``skipped`` is set when this replica is not the leader and the
    pass did nothing.
    """

    requeue_after_seconds: int | None = None
    error: Exception | None = None
    hosts: tuple[str, ...] = ()
    phase: Phase = Phase.IDLE
    skipped: bool = False
    artifact_changed: bool = False

    @property
    def succeeded(self) -> bool:
        return self.error is None


class IngressDNSReconciler:
    """Converges the rewrite rules and the CoreDNS wiring from a full Ingress listing.

    Every pass recomputes the desired host set from scratch; nothing is
    carried between passes.  The generated ConfigMap is the primary
    objective: if it cannot be converged the pass fails and is retried.
    The Corefile ``import`` and the Deployment volume are secondary and only
    touched when ``auto_configure`` is on; their failures are logged and
    counted but do not fail the pass, since the rules themselves are in place.
    """

    def __init__(
        self,
        resources: KubernetesResourceClient,
        config: ControllerConfig,
        leadership: LeadershipGate,
        *,
        scope_filter: ScopeFilter | None = None,
        configmaps: ConfigMapMutator | None = None,
        corefile: CorefileMutator | None = None,
        workload: WorkloadMutator | None = None,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.resources = resources
        self.config = config
        self.leadership = leadership
        self.logger = logger or LOGGER
        self.scope_filter = scope_filter or ScopeFilter(config.scope)

        mutator_options: dict[str, Any] = {
            "attempts": config.conflict_attempts,
            "backoff_seconds": config.conflict_backoff_seconds,
            "sleep": sleep,
        }
        self.configmaps = configmaps or ConfigMapMutator(
            resources, config.coredns, **mutator_options
        )
        self.corefile = corefile or CorefileMutator(resources, config.coredns, **mutator_options)
        self.workload = workload or WorkloadMutator(resources, config.coredns, **mutator_options)
        self.phase = Phase.IDLE

    def _enter(self, phase: Phase) -> None:
        self.phase = phase
        self.logger.debug("Reconcile phase: %s", phase.value)

    def _list_ingresses(self) -> list[Any]:
        """List candidate Ingresses.

        A cluster-wide listing either succeeds or fails the pass.  With a
        namespace allow-list each namespace is listed on its own; a namespace
        that fails is left out of this pass, unless every namespace failed.
        """
        if self.scope_filter.watches_all_namespaces:
            return self.resources.list_ingresses()

        namespaces = sorted(
            namespace
            for namespace in self.config.scope.watch_namespaces
            if self.scope_filter.should_watch_namespace(namespace)
        )
        items: list[Any] = []
        failures: list[str] = []
        for namespace in namespaces:
            try:
                items.extend(self.resources.list_ingresses(namespace))
            except ApiException as exc:
                failures.append(namespace)
                METRICS.reconciliation_errors_total.labels(error_type="list_namespace").inc()
                self.logger.warning(
                    "Failed to list Ingresses in namespace %s (status=%s); "
                    "leaving it out of this pass",
                    namespace,
                    exc.status,
                )
        if namespaces and len(failures) == len(namespaces):
            raise RetryableSyncError(
                f"failed to list Ingresses in every watched namespace: {', '.join(failures)}"
            )
        return items

    def _record_scope(self, ingresses: list[Any]) -> None:
        per_namespace = Counter(
            getattr(ingress.metadata, "namespace", None) or ""
            for ingress in ingresses
            if self.scope_filter.in_scope(ingress)
        )
        METRICS.ingresses_watched.clear()
        for namespace, count in per_namespace.items():
            METRICS.ingresses_watched.labels(namespace=namespace).set(count)

    def _log_host_diff(self, previous_text: str | None, hosts: list[str]) -> None:
        previous = parse_rewrite_hosts(previous_text) if previous_text else set()
        current = set(hosts)
        added = sorted(current - previous)
        removed = sorted(previous - current)
        if added:
            self.logger.info("Adding rewrite rules for %d host(s): %s", len(added), ", ".join(added))
        if removed:
            self.logger.info(
                "Removing rewrite rules for %d host(s): %s", len(removed), ", ".join(removed)
            )

    def _fail(self, stage: str, exc: Exception, started: float) -> ReconcileResult:
        failed_phase = self.phase
        self._enter(Phase.RETRY_SCHEDULED)
        self.logger.error(
            "Reconciliation failed during %s: %s; retrying in %ss",
            failed_phase.value,
            exc,
            self.config.requeue_after_seconds,
        )
        METRICS.reconciliation_errors_total.labels(error_type=stage).inc()
        METRICS.reconciliation_total.labels(result="error").inc()
        METRICS.reconciliation_duration_seconds.labels(result="error").observe(
            time.monotonic() - started
        )
        return ReconcileResult(
            requeue_after_seconds=self.config.requeue_after_seconds,
            error=exc,
            phase=Phase.RETRY_SCHEDULED,
        )

    def reconcile(self) -> ReconcileResult:
        """Run one convergence pass. Never raises for API or convergence failures."""
        if not self.leadership.is_leader:
            METRICS.reconciliation_skipped_total.inc()
            self.logger.debug("Not leader; skipping reconciliation")
            return ReconcileResult(skipped=True)

        started = time.monotonic()
        coredns = self.config.coredns

        self._enter(Phase.LISTING)
        try:
            ingresses = self._list_ingresses()
        except ApiException as exc:
            return self._fail("list", classify_api_exception(exc, "list Ingresses"), started)
        except SyncError as exc:
            return self._fail("list", exc, started)

        self._enter(Phase.FILTERING)
        hosts = self.scope_filter.extract_hosts(ingresses)
        self._record_scope(ingresses)

        self._enter(Phase.GENERATING)
        desired_text = generate_rewrite_rules(hosts, coredns.target_cname)

        self._enter(Phase.CONVERGING_ARTIFACT)
        try:
            previous_text = self.configmaps.current_text()
            outcome = self.configmaps.converge(desired_text)
        except ApiException as exc:
            return self._fail(
                "artifact",
                classify_api_exception(exc, f"read ConfigMap {self.configmaps.name}"),
                started,
            )
        except SyncError as exc:
            return self._fail("artifact", exc, started)

        if outcome.changed:
            self._log_host_diff(previous_text, hosts)
        METRICS.dns_records_managed.set(len(hosts))

        if coredns.auto_configure:
            self._enter(Phase.CONVERGING_TEXT_CONFIG)
            try:
                self.corefile.ensure_import()
            except SyncError as exc:
                METRICS.reconciliation_errors_total.labels(error_type="corefile").inc()
                self.logger.warning("Could not ensure the Corefile import directive: %s", exc)

            self._enter(Phase.CONVERGING_WORKLOAD)
            try:
                self.workload.ensure_volume_mount()
            except SyncError as exc:
                METRICS.reconciliation_errors_total.labels(error_type="deployment").inc()
                self.logger.warning("Could not ensure the CoreDNS volume mount: %s", exc)
        else:
            self.logger.debug("CoreDNS auto-configuration disabled; leaving Corefile and Deployment")

        self._enter(Phase.IDLE)
        METRICS.reconciliation_total.labels(result="success").inc()
        METRICS.reconciliation_duration_seconds.labels(result="success").observe(
            time.monotonic() - started
        )
        self.logger.info(
            "Reconciled %d host(s) from %d Ingress object(s) (artifact_changed=%s)",
            len(hosts),
            len(ingresses),
            outcome.changed,
        )
        return ReconcileResult(
            hosts=tuple(hosts),
            phase=Phase.IDLE,
            artifact_changed=outcome.changed,
        )

    def cleanup(self) -> None:
        """Remove everything the controller installed.

        Runs regardless of ``auto_configure`` so a controller that was
        switched to manual wiring still uninstalls cleanly.  Every step is
        attempted; objects that are already gone count as clean.  Raises
        :class:`CleanupError` naming the steps that failed.
        """
        steps: list[tuple[str, Callable[[], bool]]] = [
            ("import_statement", self.corefile.remove_import),
            ("volume_mount", self.workload.remove_volume_mount),
            ("configmap", self.configmaps.delete),
        ]
        failed: list[str] = []
        for name, step in steps:
            try:
                step()
            except (SyncError, ApiException):
                self.logger.exception("Cleanup step %s failed", name)
                failed.append(name)

        if failed:
            raise CleanupError(failed)
        self.logger.info("Cleanup completed")
