from __future__ import annotations

import copy
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from kubernetes.client import (
    ApiException,
    V1ConfigMapVolumeSource,
    V1Deployment,
    V1KeyToPath,
    V1PodSpec,
    V1Volume,
    V1VolumeMount,
)

from dnssync.src.config import CoreDNSConfig
from dnssync.src.kube import KubernetesResourceClient
from dnssync.src.metrics import METRICS
from dnssync.src.retry import (
    DEFAULT_ATTEMPTS,
    DEFAULT_BACKOFF_SECONDS,
    MalformedResourceError,
    is_not_found,
    optimistic_update,
)

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class VolumeMountChange:
    volume_added: bool = False
    mount_added: bool = False
    mount_skipped: bool = False

    @property
    def changed(self) -> bool:
        return self.volume_added or self.mount_added


def build_volume(coredns: CoreDNSConfig) -> V1Volume:
    return V1Volume(
        name=coredns.volume_name,
        config_map=V1ConfigMapVolumeSource(
            name=coredns.dynamic_configmap_name,
            items=[V1KeyToPath(key=coredns.dynamic_config_key, path=coredns.volume_file_name)],
        ),
    )


def build_volume_mount(coredns: CoreDNSConfig) -> V1VolumeMount:
    return V1VolumeMount(name=coredns.volume_name, mount_path=coredns.mount_path, read_only=True)


def ensure_volume_mount(
    pod_spec: V1PodSpec, volume: V1Volume, mount: V1VolumeMount
) -> VolumeMountChange:
    """Add *volume* and, on the first container, *mount* when missing.

    The two halves are checked independently so a pod spec left half-wired
    by an earlier failure is completed rather than duplicated.  With no
    containers only the volume is added and ``mount_skipped`` is set.
    Mutates *pod_spec* in place.
    """
    volumes = list(pod_spec.volumes or [])
    volume_added = False
    if not any(existing.name == volume.name for existing in volumes):
        volumes.append(volume)
        pod_spec.volumes = volumes
        volume_added = True

    containers = pod_spec.containers or []
    if not containers:
        return VolumeMountChange(volume_added=volume_added, mount_skipped=True)

    container = containers[0]
    mounts = list(container.volume_mounts or [])
    mount_added = False
    if not any(existing.name == mount.name for existing in mounts):
        mounts.append(mount)
        container.volume_mounts = mounts
        mount_added = True

    return VolumeMountChange(volume_added=volume_added, mount_added=mount_added)


def remove_volume_mount(pod_spec: V1PodSpec, name: str) -> bool:
    """Drop the volume called *name* and every container mount of it."""
    changed = False
    volumes = pod_spec.volumes or []
    kept_volumes = [volume for volume in volumes if volume.name != name]
    if len(kept_volumes) != len(volumes):
        pod_spec.volumes = kept_volumes
        changed = True

    for container in pod_spec.containers or []:
        mounts = container.volume_mounts or []
        kept_mounts = [mount for mount in mounts if mount.name != name]
        if len(kept_mounts) != len(mounts):
            container.volume_mounts = kept_mounts
            changed = True
    return changed


def _pod_spec(deployment: V1Deployment) -> V1PodSpec | None:
    return getattr(getattr(getattr(deployment, "spec", None), "template", None), "spec", None)


class WorkloadMutator:
    """Wires the generated rules into the CoreDNS Deployment as a read-only volume."""

    def __init__(
        self,
        resources: KubernetesResourceClient,
        coredns: CoreDNSConfig,
        *,
        attempts: int = DEFAULT_ATTEMPTS,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.resources = resources
        self.coredns = coredns
        self.attempts = attempts
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep
        self.logger = logger or LOGGER

    @property
    def _ref(self) -> str:
        return f"{self.coredns.namespace}/{self.coredns.deployment_name}"

    def _read(self, *, missing_ok: bool) -> V1Deployment | None:
        try:
            return self.resources.get_deployment(
                self.coredns.namespace, self.coredns.deployment_name
            )
        except ApiException as exc:
            if not is_not_found(exc):
                raise
            if missing_ok:
                return None
            raise MalformedResourceError(f"CoreDNS Deployment {self._ref} not found") from exc

    def _replace(self, current: V1Deployment | None, desired: V1Deployment) -> V1Deployment:
        return self.resources.replace_deployment(
            self.coredns.namespace, self.coredns.deployment_name, desired
        )

    def ensure_volume_mount(self) -> VolumeMountChange:
        volume = build_volume(self.coredns)
        mount = build_volume_mount(self.coredns)
        change = VolumeMountChange()

        def mutate(current: V1Deployment | None) -> V1Deployment | None:
            nonlocal change
            updated = copy.deepcopy(current)
            pod_spec = _pod_spec(updated)
            if pod_spec is None:
                raise MalformedResourceError(f"Deployment {self._ref} has no pod template spec")
            change = ensure_volume_mount(pod_spec, volume, mount)
            return updated if change.changed else None

        outcome = optimistic_update(
            read=lambda: self._read(missing_ok=False),
            mutate=mutate,
            write=self._replace,
            description=f"wire volume {self.coredns.volume_name} into Deployment {self._ref}",
            resource="deployment",
            attempts=self.attempts,
            backoff_seconds=self.backoff_seconds,
            sleep=self.sleep,
            logger=self.logger,
        )

        if change.mount_skipped:
            self.logger.warning(
                "Deployment %s has no containers; skipped mounting %s",
                self._ref,
                self.coredns.volume_name,
            )
        if outcome.changed:
            METRICS.config_drift_total.labels(drift_type="volume_mount").inc()
            self.logger.info(
                "Updated Deployment %s (volume_added=%s, mount_added=%s)",
                self._ref,
                change.volume_added,
                change.mount_added,
            )
        else:
            self.logger.debug("Deployment %s already mounts %s", self._ref, self.coredns.volume_name)
        return change

    def remove_volume_mount(self) -> bool:
        def mutate(current: V1Deployment | None) -> V1Deployment | None:
            if current is None:
                return None
            updated = copy.deepcopy(current)
            pod_spec = _pod_spec(updated)
            if pod_spec is None or not remove_volume_mount(pod_spec, self.coredns.volume_name):
                return None
            return updated

        outcome = optimistic_update(
            read=lambda: self._read(missing_ok=True),
            mutate=mutate,
            write=self._replace,
            description=f"remove volume {self.coredns.volume_name} from Deployment {self._ref}",
            resource="deployment",
            attempts=self.attempts,
            backoff_seconds=self.backoff_seconds,
            sleep=self.sleep,
            logger=self.logger,
        )
        if outcome.changed:
            self.logger.info(
                "Removed volume %s from Deployment %s", self.coredns.volume_name, self._ref
            )
        else:
            self.logger.info(
                "Volume %s not present in Deployment %s; already removed",
                self.coredns.volume_name,
                self._ref,
            )
        return outcome.changed
