from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

CONTROLLER_NAME = "ingress-dns-sync"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"


class ConfigError(ValueError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ScopeConfig:
    """Which Ingress objects the controller acts on.

    Attributes:
        ingress_class:          ``spec.ingressClassName`` to match.
        watch_namespaces:       Namespaces to watch; empty means all namespaces.
        exclude_namespaces:     Namespaces never processed, even when watched.
        exclude_ingresses:      ``name`` (any namespace) or ``namespace/name`` entries.
        annotation_enabled_key: Per-Ingress opt-out annotation; empty disables it.
    """

    ingress_class: str = "nginx"
    watch_namespaces: frozenset[str] = frozenset()
    exclude_namespaces: frozenset[str] = frozenset()
    exclude_ingresses: frozenset[str] = frozenset()
    annotation_enabled_key: str = ""


@dataclass(frozen=True)
class CoreDNSConfig:
    """Names and wiring of the CoreDNS objects the controller converges."""

    target_cname: str = "ingress-nginx-controller.ingress-nginx.svc.cluster.local."
    namespace: str = "kube-system"
    configmap_name: str = "coredns"
    corefile_key: str = "Corefile"
    deployment_name: str = "coredns"
    dynamic_configmap_name: str = "coredns-ingress-sync-rewrite-rules"
    dynamic_config_key: str = "dynamic.server"
    volume_name: str = "coredns-ingress-sync-volume"
    volume_file_name: str = "dynamic.server"
    mount_path: str = "/etc/coredns/custom"
    server_block_pattern: str = r"\.:53\s*\{"
    auto_configure: bool = True
    managed_by: str = CONTROLLER_NAME

    @property
    def import_statement(self) -> str:
        return f"import {self.mount_path.rstrip('/')}/*.server"

    @property
    def management_labels(self) -> dict[str, str]:
        return {MANAGED_BY_LABEL: self.managed_by}


@dataclass(frozen=True)
class LeaderElectionConfig:
    enabled: bool = True
    namespace: str = CONTROLLER_NAME
    lease_name: str = f"{CONTROLLER_NAME}-leader"
    identity: str = "unknown"
    lease_duration_seconds: int = 15
    renew_deadline_seconds: int = 10
    retry_period_seconds: int = 2


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable process configuration, built once at startup and passed down."""

    scope: ScopeConfig = field(default_factory=ScopeConfig)
    coredns: CoreDNSConfig = field(default_factory=CoreDNSConfig)
    leader_election: LeaderElectionConfig = field(default_factory=LeaderElectionConfig)
    health_port: int = 8081
    requeue_after_seconds: int = 60
    conflict_attempts: int = 3
    conflict_backoff_seconds: float = 0.1
    release_instance: str = CONTROLLER_NAME
    controller_deployment_name: str = CONTROLLER_NAME


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_list(value: str | None) -> frozenset[str]:
    """Split a comma-separated value into a set of non-empty, trimmed entries."""
    if not value:
        return frozenset()
    return frozenset(part.strip() for part in value.split(",") if part.strip())


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    environ: Mapping[str, str] | None = None,
) -> int:
    env = os.environ if environ is None else environ
    raw = env.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _env_str(env: Mapping[str, str], name: str, default: str) -> str:
    value = env.get(name, "").strip()
    return value or default


def build_config_from_env(
    environ: Mapping[str, str] | None = None,
    default_identity: str = "unknown",
) -> ControllerConfig:
    """Construct a :class:`ControllerConfig` from environment variables.

    Empty variables fall back to their defaults, matching how the Helm chart
    renders unset values.  Raises :class:`ConfigError` for malformed values.
    """
    env = os.environ if environ is None else environ

    exclude_ingresses = parse_list(env.get("EXCLUDE_INGRESSES"))
    for entry in exclude_ingresses:
        if "/" in entry:
            namespace, _, name = entry.partition("/")
            if not namespace.strip() or not name.strip():
                raise ConfigError(
                    f"EXCLUDE_INGRESSES entries must be 'name' or 'namespace/name', got: {entry!r}"
                )

    scope = ScopeConfig(
        ingress_class=_env_str(env, "INGRESS_CLASS", "nginx"),
        watch_namespaces=parse_list(env.get("WATCH_NAMESPACES")),
        exclude_namespaces=parse_list(env.get("EXCLUDE_NAMESPACES")),
        exclude_ingresses=exclude_ingresses,
        annotation_enabled_key=env.get("ANNOTATION_ENABLED_KEY", "").strip(),
    )

    defaults = CoreDNSConfig()
    coredns = CoreDNSConfig(
        target_cname=_env_str(env, "TARGET_CNAME", defaults.target_cname),
        namespace=_env_str(env, "COREDNS_NAMESPACE", defaults.namespace),
        configmap_name=_env_str(env, "COREDNS_CONFIGMAP_NAME", defaults.configmap_name),
        deployment_name=_env_str(env, "COREDNS_DEPLOYMENT_NAME", defaults.deployment_name),
        dynamic_configmap_name=_env_str(
            env, "DYNAMIC_CONFIGMAP_NAME", defaults.dynamic_configmap_name
        ),
        dynamic_config_key=_env_str(env, "DYNAMIC_CONFIG_KEY", defaults.dynamic_config_key),
        volume_name=_env_str(env, "COREDNS_VOLUME_NAME", defaults.volume_name),
        mount_path=_env_str(env, "MOUNT_PATH", defaults.mount_path),
        auto_configure=parse_bool(env.get("COREDNS_AUTO_CONFIGURE"), default=True),
    )
    if not coredns.mount_path.startswith("/"):
        raise ConfigError(f"MOUNT_PATH must be an absolute path, got: {coredns.mount_path!r}")

    pod_namespace = _env_str(env, "POD_NAMESPACE", CONTROLLER_NAME)
    leader_election = LeaderElectionConfig(
        enabled=parse_bool(env.get("LEADER_ELECTION_ENABLED"), default=True),
        namespace=pod_namespace,
        lease_name=_env_str(env, "LEADER_ELECTION_LEASE_NAME", f"{CONTROLLER_NAME}-leader"),
        identity=_env_str(env, "LEADER_ELECTION_IDENTITY", default_identity),
        lease_duration_seconds=env_int(
            "LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1, environ=env
        ),
        renew_deadline_seconds=env_int(
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1, environ=env
        ),
        retry_period_seconds=env_int(
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1, environ=env
        ),
    )
    if leader_election.renew_deadline_seconds >= leader_election.lease_duration_seconds:
        raise ConfigError(
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
            "LEADER_ELECTION_LEASE_DURATION_SECONDS"
        )
    if leader_election.retry_period_seconds >= leader_election.renew_deadline_seconds:
        raise ConfigError(
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
        )

    return ControllerConfig(
        scope=scope,
        coredns=coredns,
        leader_election=leader_election,
        health_port=env_int("HEALTH_PORT", 8081, minimum=1, maximum=65535, environ=env),
        requeue_after_seconds=env_int("REQUEUE_AFTER_SECONDS", 60, minimum=1, environ=env),
        release_instance=_env_str(env, "RELEASE_INSTANCE", pod_namespace),
        controller_deployment_name=_env_str(env, "CONTROLLER_DEPLOYMENT_NAME", CONTROLLER_NAME),
    )
