from __future__ import annotations

import dataclasses
import logging
from unittest.mock import MagicMock

import pytest
from kubernetes.client import ApiException

from dnssync.src.config import MANAGED_BY_LABEL, ControllerConfig, ScopeConfig
from dnssync.src.leader import StaticLeadership
from dnssync.src.metrics import METRICS
from dnssync.src.reconciler import IngressDNSReconciler, Phase
from dnssync.src.retry import CleanupError, PermissionDeniedError, RetryableSyncError
from dnssync.tests.fakes import COREFILE, FakeCluster, make_config_map, make_ingress

ARTIFACT = "coredns-ingress-sync-rewrite-rules"
IMPORT = "import /etc/coredns/custom/*.server"
VOLUME = "coredns-ingress-sync-volume"
TARGET = "ingress-nginx-controller.ingress-nginx.svc.cluster.local."


def _reconciler(
    cluster: FakeCluster, config: ControllerConfig, leader: bool = True
) -> IngressDNSReconciler:
    return IngressDNSReconciler(
        cluster,  # type: ignore[arg-type]
        config,
        StaticLeadership(leader),
        sleep=lambda _seconds: None,
    )


def _with(config: ControllerConfig, **coredns: object) -> ControllerConfig:
    return dataclasses.replace(config, coredns=dataclasses.replace(config.coredns, **coredns))


def _rules(cluster: FakeCluster) -> list[str]:
    text = (cluster.config_map_data(ARTIFACT) or {}).get("dynamic.server", "")
    return [line for line in text.splitlines() if line.startswith("rewrite ")]


def _volume_names(cluster: FakeCluster) -> list[str]:
    pod_spec = cluster.deployment().spec.template.spec
    return [volume.name for volume in pod_spec.volumes or []]


def _mount_names(cluster: FakeCluster) -> list[str]:
    pod_spec = cluster.deployment().spec.template.spec
    return [mount.name for c in pod_spec.containers for mount in c.volume_mounts or []]


def test_standby_replica_does_nothing(controller_config: ControllerConfig) -> None:
    resources = MagicMock()
    before = METRICS.reconciliation_skipped_total._value.get()

    result = IngressDNSReconciler(resources, controller_config, StaticLeadership(False)).reconcile()

    assert result.skipped is True
    assert result.error is None
    assert result.requeue_after_seconds is None
    assert resources.mock_calls == []
    assert METRICS.reconciliation_skipped_total._value.get() - before == 1


def test_full_pass_converges_artifact_corefile_and_deployment(
    cluster: FakeCluster, controller_config: ControllerConfig
) -> None:
    cluster.add_ingress(make_ingress("api", hosts=("api.example.com",)))

    result = _reconciler(cluster, controller_config).reconcile()

    assert result.succeeded
    assert result.phase is Phase.IDLE
    assert result.hosts == ("api.example.com",)
    assert result.artifact_changed is True
    assert _rules(cluster) == [f"rewrite name exact api.example.com {TARGET}"]
    labels = cluster.config_maps[("kube-system", ARTIFACT)].metadata.labels
    assert labels[MANAGED_BY_LABEL] == controller_config.coredns.managed_by
    assert cluster.config_map_data("coredns")["Corefile"].count(IMPORT) == 1  # type: ignore[index]
    assert _volume_names(cluster).count(VOLUME) == 1
    assert _mount_names(cluster).count(VOLUME) == 1


def test_duplicate_hosts_render_one_rule(
    cluster: FakeCluster, controller_config: ControllerConfig
) -> None:
    cluster.add_ingress(make_ingress("a", hosts=("api.example.com",)))
    cluster.add_ingress(make_ingress("b", namespace="other", hosts=("api.example.com",)))

    _reconciler(cluster, controller_config).reconcile()

    assert _rules(cluster) == [f"rewrite name exact api.example.com {TARGET}"]


def test_second_pass_with_same_state_issues_no_writes(
    cluster: FakeCluster, controller_config: ControllerConfig
) -> None:
    cluster.add_ingress(make_ingress("api"))
    reconciler = _reconciler(cluster, controller_config)
    reconciler.reconcile()
    writes_after_first = list(cluster.writes)

    result = reconciler.reconcile()

    assert result.succeeded
    assert result.artifact_changed is False
    assert cluster.writes == writes_after_first


def test_removed_ingress_prunes_its_rule(
    cluster: FakeCluster, controller_config: ControllerConfig
) -> None:
    cluster.add_ingress(make_ingress("a", hosts=("a.example.com",)))
    cluster.add_ingress(make_ingress("b", hosts=("b.example.com",)))
    reconciler = _reconciler(cluster, controller_config)
    reconciler.reconcile()

    cluster.ingresses = [i for i in cluster.ingresses if i.metadata.name != "b"]
    result = reconciler.reconcile()

    assert result.hosts == ("a.example.com",)
    assert _rules(cluster) == [f"rewrite name exact a.example.com {TARGET}"]


def test_external_edits_are_repaired(
    cluster: FakeCluster, controller_config: ControllerConfig
) -> None:
    cluster.add_ingress(make_ingress("api"))
    reconciler = _reconciler(cluster, controller_config)
    reconciler.reconcile()

    cluster.add_config_map(make_config_map(ARTIFACT, data={"dynamic.server": "hand edited\n"}))
    cluster.add_config_map(make_config_map("coredns", data={"Corefile": COREFILE}))
    reconciler.reconcile()

    assert _rules(cluster) == [f"rewrite name exact app.example.com {TARGET}"]
    stored = cluster.config_maps[("kube-system", ARTIFACT)]
    assert stored.metadata.labels[MANAGED_BY_LABEL] == controller_config.coredns.managed_by
    assert IMPORT in cluster.config_map_data("coredns")["Corefile"]  # type: ignore[index]


def test_auto_configure_disabled_only_touches_artifact(
    cluster: FakeCluster, controller_config: ControllerConfig
) -> None:
    cluster.add_ingress(make_ingress("api"))

    result = _reconciler(cluster, _with(controller_config, auto_configure=False)).reconcile()

    assert result.succeeded
    assert cluster.writes == [("create_config_map", ARTIFACT)]
    assert IMPORT not in cluster.config_map_data("coredns")["Corefile"]  # type: ignore[index]
    assert VOLUME not in _volume_names(cluster)


def test_artifact_failure_schedules_retry(
    cluster: FakeCluster, controller_config: ControllerConfig
) -> None:
    cluster.add_ingress(make_ingress("api"))
    cluster.fail("create_config_map", *[ApiException(status=409, reason="Conflict")] * 3)
    errors_before = METRICS.reconciliation_total.labels(result="error")._value.get()

    result = _reconciler(cluster, controller_config).reconcile()

    assert not result.succeeded
    assert isinstance(result.error, RetryableSyncError)
    assert result.requeue_after_seconds == 60
    assert result.phase is Phase.RETRY_SCHEDULED
    assert METRICS.reconciliation_total.labels(result="error")._value.get() - errors_before == 1
    # Secondary steps are not attempted after the artifact failed.
    assert IMPORT not in cluster.config_map_data("coredns")["Corefile"]  # type: ignore[index]


def test_artifact_read_error_schedules_retry(
    cluster: FakeCluster, controller_config: ControllerConfig
) -> None:
    cluster.fail(f"get_config_map/{ARTIFACT}", ApiException(status=403, reason="Forbidden"))

    result = _reconciler(cluster, controller_config).reconcile()

    assert isinstance(result.error, PermissionDeniedError)
    assert result.requeue_after_seconds == 60


def test_requeue_delay_is_configurable(
    cluster: FakeCluster, controller_config: ControllerConfig
) -> None:
    cluster.fail("list_ingresses", ApiException(status=500, reason="boom"))
    config = dataclasses.replace(controller_config, requeue_after_seconds=15)

    result = _reconciler(cluster, config).reconcile()

    assert isinstance(result.error, RetryableSyncError)
    assert result.requeue_after_seconds == 15


def test_secondary_failures_do_not_fail_the_pass(
    controller_config: ControllerConfig, caplog: pytest.LogCaptureFixture
) -> None:
    cluster = FakeCluster()
    cluster.add_ingress(make_ingress("api"))
    corefile_errors = METRICS.reconciliation_errors_total.labels(error_type="corefile")
    deployment_errors = METRICS.reconciliation_errors_total.labels(error_type="deployment")
    corefile_before = corefile_errors._value.get()
    deployment_before = deployment_errors._value.get()

    with caplog.at_level(logging.WARNING):
        result = _reconciler(cluster, controller_config).reconcile()

    assert result.succeeded
    assert result.requeue_after_seconds is None
    assert _rules(cluster) == [f"rewrite name exact app.example.com {TARGET}"]
    assert corefile_errors._value.get() - corefile_before == 1
    assert deployment_errors._value.get() - deployment_before == 1
    assert "Could not ensure the Corefile import directive" in caplog.text


def test_namespace_listing_failure_is_partial(
    cluster: FakeCluster, controller_config: ControllerConfig
) -> None:
    config = dataclasses.replace(
        controller_config, scope=ScopeConfig(watch_namespaces=frozenset({"team-a", "team-b"}))
    )
    cluster.add_ingress(make_ingress("a", namespace="team-a", hosts=("a.example.com",)))
    cluster.add_ingress(make_ingress("b", namespace="team-b", hosts=("b.example.com",)))
    cluster.add_ingress(make_ingress("c", namespace="team-c", hosts=("c.example.com",)))
    cluster.fail("list_ingresses/team-b", ApiException(status=500, reason="boom"))

    result = _reconciler(cluster, config).reconcile()

    assert result.succeeded
    assert result.hosts == ("a.example.com",)


def test_every_namespace_failing_fails_the_pass(
    cluster: FakeCluster, controller_config: ControllerConfig
) -> None:
    config = dataclasses.replace(
        controller_config, scope=ScopeConfig(watch_namespaces=frozenset({"team-a"}))
    )
    cluster.fail("list_ingresses/team-a", ApiException(status=500, reason="boom"))

    result = _reconciler(cluster, config).reconcile()

    assert isinstance(result.error, RetryableSyncError)
    assert ("kube-system", ARTIFACT) not in cluster.config_maps


def test_excluded_watch_namespace_is_not_listed(
    cluster: FakeCluster, controller_config: ControllerConfig
) -> None:
    config = dataclasses.replace(
        controller_config,
        scope=ScopeConfig(
            watch_namespaces=frozenset({"team-a", "team-b"}),
            exclude_namespaces=frozenset({"team-b"}),
        ),
    )
    cluster.fail("list_ingresses/team-b", ApiException(status=403, reason="Forbidden"))
    cluster.add_ingress(make_ingress("a", namespace="team-a", hosts=("a.example.com",)))

    result = _reconciler(cluster, config).reconcile()

    assert result.succeeded
    assert cluster.failures["list_ingresses/team-b"]


class TestCleanup:
    @pytest.mark.parametrize("auto_configure", [True, False])
    def test_removes_everything_regardless_of_auto_configure(
        self, cluster: FakeCluster, controller_config: ControllerConfig, auto_configure: bool
    ) -> None:
        cluster.add_ingress(make_ingress("api"))
        _reconciler(cluster, controller_config).reconcile()

        _reconciler(cluster, _with(controller_config, auto_configure=auto_configure)).cleanup()

        assert ("kube-system", ARTIFACT) not in cluster.config_maps
        assert IMPORT not in cluster.config_map_data("coredns")["Corefile"]  # type: ignore[index]
        assert VOLUME not in _volume_names(cluster)
        assert VOLUME not in _mount_names(cluster)

    def test_is_idempotent(self, cluster: FakeCluster, controller_config: ControllerConfig) -> None:
        reconciler = _reconciler(cluster, controller_config)

        reconciler.cleanup()
        reconciler.cleanup()

        assert cluster.writes == []

    def test_tolerates_missing_coredns_objects(self, controller_config: ControllerConfig) -> None:
        _reconciler(FakeCluster(), controller_config).cleanup()

    def test_runs_every_step_and_reports_failures(
        self, cluster: FakeCluster, controller_config: ControllerConfig
    ) -> None:
        cluster.add_ingress(make_ingress("api"))
        _reconciler(cluster, controller_config).reconcile()
        cluster.fail("get_deployment", ApiException(status=403, reason="Forbidden"))

        with pytest.raises(CleanupError) as exc_info:
            _reconciler(cluster, controller_config).cleanup()

        assert exc_info.value.failed_steps == ["volume_mount"]
        assert ("kube-system", ARTIFACT) not in cluster.config_maps
        assert IMPORT not in cluster.config_map_data("coredns")["Corefile"]  # type: ignore[index]


def test_custom_destination_is_normalized(
    cluster: FakeCluster, controller_config: ControllerConfig
) -> None:
    cluster.add_ingress(make_ingress("api", hosts=("api.example.com",)))
    config = _with(controller_config, target_cname="lb.internal")

    _reconciler(cluster, config).reconcile()

    assert _rules(cluster) == ["rewrite name exact api.example.com lb.internal."]
