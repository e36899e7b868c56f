from __future__ import annotations

import logging

import pytest
from kubernetes.client import ApiException, V1Container, V1PodSpec, V1VolumeMount

from dnssync.src.config import CoreDNSConfig
from dnssync.src.retry import MalformedResourceError, RetryExhaustedError
from dnssync.src.workload import (
    WorkloadMutator,
    build_volume,
    build_volume_mount,
    ensure_volume_mount,
    remove_volume_mount,
)
from dnssync.tests.fakes import FakeCluster, make_deployment

VOLUME = "coredns-ingress-sync-volume"


def _mutator(cluster: FakeCluster, coredns: CoreDNSConfig) -> WorkloadMutator:
    return WorkloadMutator(cluster, coredns, sleep=lambda _seconds: None)  # type: ignore[arg-type]


def _names(items: list | None) -> list[str]:
    return [item.name for item in items or []]


def _pod_spec(containers: int = 1) -> V1PodSpec:
    return make_deployment(containers=containers).spec.template.spec


def test_build_volume_references_artifact_key(coredns_config: CoreDNSConfig) -> None:
    volume = build_volume(coredns_config)
    mount = build_volume_mount(coredns_config)

    assert volume.name == VOLUME
    assert volume.config_map.name == "coredns-ingress-sync-rewrite-rules"
    assert [(item.key, item.path) for item in volume.config_map.items] == [
        ("dynamic.server", "dynamic.server")
    ]
    assert mount.name == VOLUME
    assert mount.mount_path == "/etc/coredns/custom"
    assert mount.read_only is True


def test_ensure_adds_volume_and_mount_once(coredns_config: CoreDNSConfig) -> None:
    pod_spec = _pod_spec()
    volume, mount = build_volume(coredns_config), build_volume_mount(coredns_config)

    first = ensure_volume_mount(pod_spec, volume, mount)
    second = ensure_volume_mount(pod_spec, volume, mount)

    assert first.volume_added and first.mount_added
    assert not second.changed
    assert _names(pod_spec.volumes).count(VOLUME) == 1
    assert _names(pod_spec.containers[0].volume_mounts).count(VOLUME) == 1


def test_ensure_completes_half_wired_spec(coredns_config: CoreDNSConfig) -> None:
    pod_spec = _pod_spec()
    pod_spec.volumes.append(build_volume(coredns_config))

    change = ensure_volume_mount(
        pod_spec, build_volume(coredns_config), build_volume_mount(coredns_config)
    )

    assert change.volume_added is False
    assert change.mount_added is True
    assert _names(pod_spec.volumes).count(VOLUME) == 1


def test_ensure_only_mounts_into_first_container(coredns_config: CoreDNSConfig) -> None:
    pod_spec = _pod_spec(containers=2)

    ensure_volume_mount(pod_spec, build_volume(coredns_config), build_volume_mount(coredns_config))

    assert VOLUME in _names(pod_spec.containers[0].volume_mounts)
    assert VOLUME not in _names(pod_spec.containers[1].volume_mounts)


def test_zero_containers_adds_volume_and_skips_mount(coredns_config: CoreDNSConfig) -> None:
    pod_spec = V1PodSpec(containers=[])

    change = ensure_volume_mount(
        pod_spec, build_volume(coredns_config), build_volume_mount(coredns_config)
    )

    assert change.volume_added is True
    assert change.mount_skipped is True
    assert _names(pod_spec.volumes) == [VOLUME]


def test_remove_drops_volume_and_mounts_from_every_container(
    coredns_config: CoreDNSConfig,
) -> None:
    pod_spec = _pod_spec(containers=2)
    ensure_volume_mount(pod_spec, build_volume(coredns_config), build_volume_mount(coredns_config))
    pod_spec.containers[1].volume_mounts.append(
        V1VolumeMount(name=VOLUME, mount_path="/custom", read_only=True)
    )

    assert remove_volume_mount(pod_spec, VOLUME) is True
    assert remove_volume_mount(pod_spec, VOLUME) is False
    assert VOLUME not in _names(pod_spec.volumes)
    assert all(VOLUME not in _names(c.volume_mounts) for c in pod_spec.containers)
    assert "config-volume" in _names(pod_spec.volumes)


def test_remove_handles_empty_lists() -> None:
    pod_spec = V1PodSpec(containers=[V1Container(name="c")])

    assert remove_volume_mount(pod_spec, VOLUME) is False


class TestWorkloadMutator:
    def test_ensure_writes_once(self, cluster: FakeCluster, coredns_config: CoreDNSConfig) -> None:
        mutator = _mutator(cluster, coredns_config)

        assert mutator.ensure_volume_mount().changed is True
        assert mutator.ensure_volume_mount().changed is False
        assert cluster.writes == [("replace_deployment", "coredns")]
        pod_spec = cluster.deployment().spec.template.spec
        assert _names(pod_spec.volumes).count(VOLUME) == 1

    def test_ensure_warns_for_deployment_without_containers(
        self,
        cluster: FakeCluster,
        coredns_config: CoreDNSConfig,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        cluster.add_deployment(make_deployment(containers=0))

        with caplog.at_level(logging.WARNING):
            change = _mutator(cluster, coredns_config).ensure_volume_mount()

        assert change.mount_skipped is True
        assert "has no containers" in caplog.text

    def test_missing_deployment_is_malformed(self, coredns_config: CoreDNSConfig) -> None:
        with pytest.raises(MalformedResourceError, match="kube-system/coredns not found"):
            _mutator(FakeCluster(), coredns_config).ensure_volume_mount()

    def test_conflicts_exhaust_budget(
        self, cluster: FakeCluster, coredns_config: CoreDNSConfig
    ) -> None:
        cluster.fail("replace_deployment", *[ApiException(status=409, reason="Conflict")] * 3)

        with pytest.raises(RetryExhaustedError):
            _mutator(cluster, coredns_config).ensure_volume_mount()

    def test_remove(self, cluster: FakeCluster, coredns_config: CoreDNSConfig) -> None:
        mutator = _mutator(cluster, coredns_config)
        mutator.ensure_volume_mount()

        assert mutator.remove_volume_mount() is True
        assert mutator.remove_volume_mount() is False
        assert VOLUME not in _names(cluster.deployment().spec.template.spec.volumes)

    def test_remove_tolerates_missing_deployment(self, coredns_config: CoreDNSConfig) -> None:
        assert _mutator(FakeCluster(), coredns_config).remove_volume_mount() is False
