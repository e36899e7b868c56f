from __future__ import annotations

import copy
from typing import Any

from kubernetes.client import (
    ApiException,
    V1ConfigMap,
    V1ConfigMapVolumeSource,
    V1Container,
    V1Deployment,
    V1DeploymentSpec,
    V1Ingress,
    V1IngressRule,
    V1IngressSpec,
    V1LabelSelector,
    V1ObjectMeta,
    V1PodSpec,
    V1PodTemplateSpec,
    V1Volume,
    V1VolumeMount,
)

COREFILE = """.:53 {
    errors
    health {
       lameduck 5s
    }
    ready
    kubernetes cluster.local in-addr.arpa ip6.arpa {
       pods insecure
       fallthrough in-addr.arpa ip6.arpa
       ttl 30
    }
    forward . /etc/resolv.conf
    cache 30
    loop
    reload
    loadbalance
}
"""


def make_ingress(
    name: str,
    namespace: str = "default",
    hosts: tuple[str | None, ...] = ("app.example.com",),
    ingress_class: str | None = "nginx",
    annotations: dict[str, str] | None = None,
) -> V1Ingress:
    return V1Ingress(
        metadata=V1ObjectMeta(name=name, namespace=namespace, annotations=annotations),
        spec=V1IngressSpec(
            ingress_class_name=ingress_class,
            rules=[V1IngressRule(host=host) for host in hosts],
        ),
    )


def make_config_map(
    name: str,
    namespace: str = "kube-system",
    data: dict[str, str] | None = None,
    labels: dict[str, str] | None = None,
) -> V1ConfigMap:
    return V1ConfigMap(
        metadata=V1ObjectMeta(name=name, namespace=namespace, labels=labels),
        data=data,
    )


def make_deployment(
    name: str = "coredns",
    namespace: str = "kube-system",
    containers: int = 1,
    extra_mounts: list[V1VolumeMount] | None = None,
    labels: dict[str, str] | None = None,
) -> V1Deployment:
    container_list = []
    for index in range(containers):
        mounts = [V1VolumeMount(name="config-volume", mount_path="/etc/coredns", read_only=True)]
        if index == 0 and extra_mounts:
            mounts.extend(extra_mounts)
        container_list.append(
            V1Container(
                name="coredns" if index == 0 else f"sidecar-{index}",
                image="registry.k8s.io/coredns/coredns:v1.11.1",
                volume_mounts=mounts,
            )
        )
    return V1Deployment(
        metadata=V1ObjectMeta(name=name, namespace=namespace, labels=labels),
        spec=V1DeploymentSpec(
            selector=V1LabelSelector(match_labels={"k8s-app": "kube-dns"}),
            template=V1PodTemplateSpec(
                metadata=V1ObjectMeta(labels={"k8s-app": "kube-dns"}),
                spec=V1PodSpec(
                    containers=container_list,
                    volumes=[
                        V1Volume(
                            name="config-volume",
                            config_map=V1ConfigMapVolumeSource(name="coredns"),
                        )
                    ],
                ),
            ),
        ),
    )


class FakeCluster:
    """In-memory stand-in for :class:`KubernetesResourceClient`.

    Objects are stored and returned as deep copies and get a fresh
    ``resourceVersion`` on every write.  A replace carrying a stale
    ``resourceVersion`` fails with ``409`` like the real API server.
    Queue errors for an operation with :meth:`fail`; operations on a single
    namespace can be targeted as ``"list_ingresses/<namespace>"``.
    """

    def __init__(self) -> None:
        self.config_maps: dict[tuple[str, str], V1ConfigMap] = {}
        self.deployments: dict[tuple[str, str], V1Deployment] = {}
        self.ingresses: list[V1Ingress] = []
        self.writes: list[tuple[str, str]] = []
        self.failures: dict[str, list[BaseException]] = {}
        self.before_write: dict[str, Any] = {}
        self._version = 0

    def fail(self, operation: str, *errors: BaseException) -> None:
        self.failures.setdefault(operation, []).extend(errors)

    def _maybe_fail(self, operation: str) -> None:
        queued = self.failures.get(operation)
        if queued:
            raise queued.pop(0)

    def _stamp(self, obj: Any) -> Any:
        self._version += 1
        stored = copy.deepcopy(obj)
        stored.metadata.resource_version = str(self._version)
        return stored

    def _run_hook(self, operation: str) -> None:
        hook = self.before_write.pop(operation, None)
        if hook is not None:
            hook(self)

    # seeding helpers

    def add_config_map(self, config_map: V1ConfigMap) -> V1ConfigMap:
        key = (config_map.metadata.namespace, config_map.metadata.name)
        self.config_maps[key] = self._stamp(config_map)
        return copy.deepcopy(self.config_maps[key])

    def add_deployment(self, deployment: V1Deployment) -> V1Deployment:
        key = (deployment.metadata.namespace, deployment.metadata.name)
        self.deployments[key] = self._stamp(deployment)
        return copy.deepcopy(self.deployments[key])

    def add_ingress(self, ingress: V1Ingress) -> None:
        self.ingresses.append(copy.deepcopy(ingress))

    def bump_config_map(self, namespace: str, name: str, **data: str) -> None:
        """Simulate a concurrent writer updating a ConfigMap."""
        stored = self.config_maps[(namespace, name)]
        stored.data = {**(stored.data or {}), **data}
        self.config_maps[(namespace, name)] = self._stamp(stored)

    # KubernetesResourceClient surface

    def list_ingresses(self, namespace: str | None = None) -> list[V1Ingress]:
        self._maybe_fail("list_ingresses")
        if namespace is not None:
            self._maybe_fail(f"list_ingresses/{namespace}")
        return [
            copy.deepcopy(ingress)
            for ingress in self.ingresses
            if namespace is None or ingress.metadata.namespace == namespace
        ]

    def get_config_map(self, namespace: str, name: str) -> V1ConfigMap:
        self._maybe_fail("get_config_map")
        self._maybe_fail(f"get_config_map/{name}")
        stored = self.config_maps.get((namespace, name))
        if stored is None:
            raise ApiException(status=404, reason="Not Found")
        return copy.deepcopy(stored)

    def create_config_map(self, namespace: str, body: V1ConfigMap) -> V1ConfigMap:
        self._run_hook("create_config_map")
        self._maybe_fail("create_config_map")
        key = (namespace, body.metadata.name)
        if key in self.config_maps:
            raise ApiException(status=409, reason="AlreadyExists")
        self.writes.append(("create_config_map", body.metadata.name))
        self.config_maps[key] = self._stamp(body)
        return copy.deepcopy(self.config_maps[key])

    def replace_config_map(self, namespace: str, name: str, body: V1ConfigMap) -> V1ConfigMap:
        self._run_hook("replace_config_map")
        self._maybe_fail("replace_config_map")
        self._maybe_fail(f"replace_config_map/{name}")
        stored = self.config_maps.get((namespace, name))
        if stored is None:
            raise ApiException(status=404, reason="Not Found")
        if body.metadata.resource_version != stored.metadata.resource_version:
            raise ApiException(status=409, reason="Conflict")
        self.writes.append(("replace_config_map", name))
        self.config_maps[(namespace, name)] = self._stamp(body)
        return copy.deepcopy(self.config_maps[(namespace, name)])

    def delete_config_map(self, namespace: str, name: str) -> None:
        self._maybe_fail("delete_config_map")
        if (namespace, name) not in self.config_maps:
            raise ApiException(status=404, reason="Not Found")
        self.writes.append(("delete_config_map", name))
        del self.config_maps[(namespace, name)]

    def get_deployment(self, namespace: str, name: str) -> V1Deployment:
        self._maybe_fail("get_deployment")
        stored = self.deployments.get((namespace, name))
        if stored is None:
            raise ApiException(status=404, reason="Not Found")
        return copy.deepcopy(stored)

    def replace_deployment(self, namespace: str, name: str, body: V1Deployment) -> V1Deployment:
        self._run_hook("replace_deployment")
        self._maybe_fail("replace_deployment")
        stored = self.deployments.get((namespace, name))
        if stored is None:
            raise ApiException(status=404, reason="Not Found")
        if body.metadata.resource_version != stored.metadata.resource_version:
            raise ApiException(status=409, reason="Conflict")
        self.writes.append(("replace_deployment", name))
        self.deployments[(namespace, name)] = self._stamp(body)
        return copy.deepcopy(self.deployments[(namespace, name)])

    def list_deployments(self, label_selector: str) -> list[V1Deployment]:
        self._maybe_fail("list_deployments")
        key, _, value = label_selector.partition("=")
        return [
            copy.deepcopy(deployment)
            for deployment in self.deployments.values()
            if (deployment.metadata.labels or {}).get(key) == value
        ]

    # inspection helpers

    def config_map_data(self, name: str, namespace: str = "kube-system") -> dict[str, str] | None:
        stored = self.config_maps.get((namespace, name))
        return None if stored is None else dict(stored.data or {})

    def deployment(self, name: str = "coredns", namespace: str = "kube-system") -> V1Deployment:
        return copy.deepcopy(self.deployments[(namespace, name)])
