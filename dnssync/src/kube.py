from __future__ import annotations

import logging

from kubernetes import client, config
from kubernetes.client import (
    AppsV1Api,
    CoreV1Api,
    NetworkingV1Api,
    V1ConfigMap,
    V1Deployment,
    V1Ingress,
)
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


class KubernetesResourceClient:
    """Typed access to the handful of resources the controller touches.

    Every call maps onto one API request and raises
    :class:`kubernetes.client.ApiException` unchanged, so callers see the
    server's optimistic-concurrency semantics: a ``replace`` whose
    ``metadata.resourceVersion`` is stale fails with ``409``.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        networking_api: NetworkingV1Api,
    ) -> None:
        self.core_api = core_api
        self.apps_api = apps_api
        self.networking_api = networking_api

    def list_ingresses(self, namespace: str | None = None) -> list[V1Ingress]:
        if namespace is None:
            result = self.networking_api.list_ingress_for_all_namespaces()
        else:
            result = self.networking_api.list_namespaced_ingress(namespace=namespace)
        return list(result.items or [])

    def get_config_map(self, namespace: str, name: str) -> V1ConfigMap:
        return self.core_api.read_namespaced_config_map(name=name, namespace=namespace)

    def create_config_map(self, namespace: str, body: V1ConfigMap) -> V1ConfigMap:
        return self.core_api.create_namespaced_config_map(namespace=namespace, body=body)

    def replace_config_map(self, namespace: str, name: str, body: V1ConfigMap) -> V1ConfigMap:
        return self.core_api.replace_namespaced_config_map(
            name=name, namespace=namespace, body=body
        )

    def delete_config_map(self, namespace: str, name: str) -> None:
        self.core_api.delete_namespaced_config_map(name=name, namespace=namespace)

    def get_deployment(self, namespace: str, name: str) -> V1Deployment:
        return self.apps_api.read_namespaced_deployment(name=name, namespace=namespace)

    def replace_deployment(self, namespace: str, name: str, body: V1Deployment) -> V1Deployment:
        return self.apps_api.replace_namespaced_deployment(
            name=name, namespace=namespace, body=body
        )

    def list_deployments(self, label_selector: str) -> list[V1Deployment]:
        result = self.apps_api.list_deployment_for_all_namespaces(label_selector=label_selector)
        return list(result.items or [])


def build_clients() -> KubernetesResourceClient:
    """Return a resource client using the active kube configuration."""
    return KubernetesResourceClient(
        core_api=client.CoreV1Api(),
        apps_api=client.AppsV1Api(),
        networking_api=client.NetworkingV1Api(),
    )
