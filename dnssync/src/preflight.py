from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from kubernetes.client import ApiException, V1Deployment

from dnssync.src.config import CONTROLLER_NAME, ControllerConfig
from dnssync.src.kube import KubernetesResourceClient
from dnssync.src.retry import is_forbidden, is_not_found

LOGGER = logging.getLogger(__name__)

INSTANCE_LABEL = "app.kubernetes.io/instance"
NAME_LABEL = "app.kubernetes.io/name"

SEVERITY_INFO = "info"
SEVERITY_WARNING = "warning"
SEVERITY_ERROR = "error"


@dataclass(frozen=True)
class CheckResult:
    name: str
    passed: bool
    message: str
    severity: str = SEVERITY_INFO


def has_errors(results: list[CheckResult]) -> bool:
    return any(not result.passed and result.severity == SEVERITY_ERROR for result in results)


class PreflightChecker:
    """Installation checks run before the controller is deployed or upgraded.

    They catch the conflicts that would otherwise surface as a CoreDNS
    outage: a missing CoreDNS Deployment, another volume already mounted at
    our path, a rewrite-rule ConfigMap owned by a different release, and
    sibling controllers that may fight over the same hosts.
    """

    def __init__(
        self,
        resources: KubernetesResourceClient,
        config: ControllerConfig,
        *,
        rbac_retries: int = 2,
        rbac_retry_delay_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        if rbac_retries < 1:
            raise ValueError("rbac_retries must be >= 1")
        self.resources = resources
        self.config = config
        self.rbac_retries = rbac_retries
        self.rbac_retry_delay_seconds = rbac_retry_delay_seconds
        self.sleep = sleep
        self.logger = logger or LOGGER

    @property
    def _deployment_ref(self) -> str:
        coredns = self.config.coredns
        return f"{coredns.namespace}/{coredns.deployment_name}"

    def _get_coredns_deployment(self) -> V1Deployment:
        coredns = self.config.coredns
        return self.resources.get_deployment(coredns.namespace, coredns.deployment_name)

    def check_coredns_deployment(self) -> tuple[CheckResult, V1Deployment | None]:
        """Look up the CoreDNS Deployment, retrying once when RBAC is still propagating."""
        name = "coredns_deployment"
        for attempt in range(1, self.rbac_retries + 1):
            try:
                deployment = self._get_coredns_deployment()
            except ApiException as exc:
                if is_forbidden(exc):
                    if attempt < self.rbac_retries:
                        self.logger.info(
                            "RBAC permissions not ready (attempt %d/%d); retrying",
                            attempt,
                            self.rbac_retries,
                        )
                        self.sleep(self.rbac_retry_delay_seconds)
                        continue
                    break
                if is_not_found(exc):
                    message = f"CoreDNS Deployment {self._deployment_ref} not found"
                else:
                    message = (
                        f"Error reading CoreDNS Deployment {self._deployment_ref}: "
                        f"{exc.status} {exc.reason}"
                    )
                return CheckResult(name, False, message, SEVERITY_ERROR), None
            return CheckResult(name, True, "CoreDNS Deployment found"), deployment

        return (
            CheckResult(
                name,
                False,
                f"Permission denied reading Deployment {self._deployment_ref}; "
                "RBAC resources are probably not created yet",
                SEVERITY_ERROR,
            ),
            None,
        )

    def check_mount_path(self, deployment: V1Deployment) -> CheckResult:
        name = "mount_path"
        coredns = self.config.coredns
        pod_spec = getattr(getattr(deployment.spec, "template", None), "spec", None)
        containers = getattr(pod_spec, "containers", None) or []
        if not containers:
            return CheckResult(
                name, False, f"Deployment {self._deployment_ref} has no containers", SEVERITY_ERROR
            )

        wanted = coredns.mount_path.rstrip("/")
        for mount in containers[0].volume_mounts or []:
            if (mount.mount_path or "").rstrip("/") == wanted and mount.name != coredns.volume_name:
                return CheckResult(
                    name,
                    False,
                    f"Mount path {coredns.mount_path} is already used by volume {mount.name!r} "
                    f"(ours is {coredns.volume_name!r}); set MOUNT_PATH to a free path "
                    "or remove the conflicting mount",
                    SEVERITY_ERROR,
                )
        return CheckResult(name, True, "No mount path conflicts detected")

    def check_configmap_owner(self) -> CheckResult:
        name = "configmap_owner"
        coredns = self.config.coredns
        try:
            config_map = self.resources.get_config_map(
                coredns.namespace, coredns.dynamic_configmap_name
            )
        except ApiException as exc:
            if is_not_found(exc):
                return CheckResult(name, True, "No ConfigMap conflicts detected")
            return CheckResult(
                name,
                True,
                f"Could not read ConfigMap {coredns.dynamic_configmap_name} "
                f"({exc.status} {exc.reason}); ownership not verified",
                SEVERITY_WARNING,
            )

        labels = getattr(config_map.metadata, "labels", None) or {}
        owner = labels.get(INSTANCE_LABEL, "")
        if owner and owner != self.config.release_instance:
            return CheckResult(
                name,
                False,
                f"ConfigMap {coredns.namespace}/{coredns.dynamic_configmap_name} belongs to "
                f"instance {owner!r}, not {self.config.release_instance!r}; set "
                "DYNAMIC_CONFIGMAP_NAME to a different name or use a different release",
                SEVERITY_ERROR,
            )
        return CheckResult(name, True, "No ConfigMap conflicts detected")

    def check_duplicate_controllers(self) -> CheckResult:
        name = "duplicate_controllers"
        try:
            deployments = self.resources.list_deployments(f"{NAME_LABEL}={CONTROLLER_NAME}")
        except ApiException as exc:
            return CheckResult(
                name,
                True,
                f"Could not check for other controllers ({exc.status} {exc.reason})",
                SEVERITY_WARNING,
            )

        others = sorted(
            f"{item.metadata.namespace}/{item.metadata.name}"
            for item in deployments
            if item.metadata.name != self.config.controller_deployment_name
        )
        if others:
            return CheckResult(
                name,
                True,
                f"Found other {CONTROLLER_NAME} deployments: {', '.join(others)}; make sure each "
                "one uses a different ingress class, namespace set or target CNAME",
                SEVERITY_WARNING,
            )
        return CheckResult(name, True, "No duplicate controllers detected")

    def run_checks(self) -> list[CheckResult]:
        coredns = self.config.coredns
        self.logger.info(
            "Running preflight checks (deployment=%s, mount_path=%s, volume=%s)",
            self._deployment_ref,
            coredns.mount_path,
            coredns.volume_name,
        )
        result, deployment = self.check_coredns_deployment()
        results = [result]
        if deployment is None:
            return results

        results.append(self.check_mount_path(deployment))
        results.append(self.check_configmap_owner())
        results.append(self.check_duplicate_controllers())
        return results

    def log_results(self, results: list[CheckResult]) -> None:
        for result in results:
            if not result.passed and result.severity == SEVERITY_ERROR:
                self.logger.error("Preflight %s failed: %s", result.name, result.message)
            elif result.severity == SEVERITY_WARNING:
                self.logger.warning("Preflight %s: %s", result.name, result.message)
            else:
                self.logger.info("Preflight %s passed: %s", result.name, result.message)

        errors = sum(1 for r in results if not r.passed and r.severity == SEVERITY_ERROR)
        warnings = sum(1 for r in results if r.severity == SEVERITY_WARNING)
        if errors:
            self.logger.error(
                "Preflight checks failed (%d error(s), %d warning(s)); resolve them before installing",
                errors,
                warnings,
            )
        else:
            self.logger.info("Preflight checks passed (%d warning(s))", warnings)
