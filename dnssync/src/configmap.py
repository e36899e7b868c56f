from __future__ import annotations

import copy
import logging
import time
from collections.abc import Callable

from kubernetes.client import ApiException, V1ConfigMap, V1ObjectMeta

from dnssync.src.config import MANAGED_BY_LABEL, CoreDNSConfig
from dnssync.src.kube import KubernetesResourceClient
from dnssync.src.metrics import METRICS
from dnssync.src.retry import (
    DEFAULT_ATTEMPTS,
    DEFAULT_BACKOFF_SECONDS,
    UpdateOutcome,
    classify_api_exception,
    is_not_found,
    optimistic_update,
)

LOGGER = logging.getLogger(__name__)


def has_management_label(config_map: V1ConfigMap | None, managed_by: str) -> bool:
    labels = getattr(getattr(config_map, "metadata", None), "labels", None) or {}
    return labels.get(MANAGED_BY_LABEL) == managed_by


class ConfigMapMutator:
    """Converges the generated rewrite-rule ConfigMap.

    The map is owned by the controller: it is created when missing, its data
    key is overwritten when the rendered rules differ, and the management
    label is forced back whenever something else removed or changed it.  A
    map that already matches is left alone, so repeated passes with the same
    hosts issue no writes.
    """

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
    def namespace(self) -> str:
        return self.coredns.namespace

    @property
    def name(self) -> str:
        return self.coredns.dynamic_configmap_name

    def read(self) -> V1ConfigMap | None:
        try:
            return self.resources.get_config_map(self.namespace, self.name)
        except ApiException as exc:
            if is_not_found(exc):
                return None
            raise

    def current_text(self) -> str | None:
        """Return the rendered rules currently stored, or None when absent."""
        config_map = self.read()
        if config_map is None:
            return None
        return (config_map.data or {}).get(self.coredns.dynamic_config_key)

    def _desired(self, current: V1ConfigMap | None, desired_text: str) -> V1ConfigMap | None:
        key = self.coredns.dynamic_config_key
        if current is None:
            return V1ConfigMap(
                metadata=V1ObjectMeta(
                    name=self.name,
                    namespace=self.namespace,
                    labels=dict(self.coredns.management_labels),
                ),
                data={key: desired_text},
            )

        existing = (current.data or {}).get(key)
        if existing == desired_text and has_management_label(current, self.coredns.managed_by):
            self.logger.debug("ConfigMap %s/%s is already up to date", self.namespace, self.name)
            return None

        updated = copy.deepcopy(current)
        updated.data = {**(updated.data or {}), key: desired_text}
        if updated.metadata is None:
            updated.metadata = V1ObjectMeta(name=self.name, namespace=self.namespace)
        updated.metadata.labels = {
            **(updated.metadata.labels or {}),
            **self.coredns.management_labels,
        }
        return updated

    def _write(self, current: V1ConfigMap | None, desired: V1ConfigMap) -> V1ConfigMap:
        if current is None:
            created = self.resources.create_config_map(self.namespace, desired)
            self.logger.info("Created ConfigMap %s/%s", self.namespace, self.name)
            return created
        replaced = self.resources.replace_config_map(self.namespace, self.name, desired)
        self.logger.info("Updated ConfigMap %s/%s", self.namespace, self.name)
        return replaced

    def converge(self, desired_text: str) -> UpdateOutcome[V1ConfigMap]:
        """Make the ConfigMap hold *desired_text*; returns whether a write happened."""
        started = time.monotonic()
        result = "error"
        try:
            outcome = optimistic_update(
                read=self.read,
                mutate=lambda current: self._desired(current, desired_text),
                write=self._write,
                description=f"converge ConfigMap {self.namespace}/{self.name}",
                resource="artifact",
                attempts=self.attempts,
                backoff_seconds=self.backoff_seconds,
                sleep=self.sleep,
                logger=self.logger,
                retry_not_found=True,
            )
            result = "success"
            return outcome
        finally:
            METRICS.artifact_updates_total.labels(result=result).inc()
            METRICS.artifact_update_duration_seconds.labels(result=result).observe(
                time.monotonic() - started
            )

    def delete(self) -> bool:
        """Delete the ConfigMap. Returns False when it was already gone."""
        try:
            self.resources.delete_config_map(self.namespace, self.name)
        except ApiException as exc:
            if is_not_found(exc):
                self.logger.info(
                    "ConfigMap %s/%s not found; already deleted", self.namespace, self.name
                )
                return False
            raise classify_api_exception(
                exc, f"delete ConfigMap {self.namespace}/{self.name}"
            ) from exc
        self.logger.info("Deleted ConfigMap %s/%s", self.namespace, self.name)
        return True
