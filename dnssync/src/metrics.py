from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    ``result`` labels are always ``success`` or ``error`` so dashboards can
    compute ratios without knowing every failure mode.
    """

    reconciliation_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_dns_sync_reconciliation_total",
            "Total reconciliation passes by outcome",
            ["result"],
        )
    )
    reconciliation_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "ingress_dns_sync_reconciliation_duration_seconds",
            "Time spent in a reconciliation pass",
            ["result"],
        )
    )
    reconciliation_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_dns_sync_reconciliation_errors_total",
            "Reconciliation failures by stage",
            ["error_type"],
        )
    )
    reconciliation_skipped_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_dns_sync_reconciliation_skipped_total",
            "Reconciliation passes skipped because this replica is not leader",
        )
    )
    dns_records_managed: Gauge = field(
        default_factory=lambda: Gauge(
            "ingress_dns_sync_dns_records_managed",
            "Number of rewrite rules in the generated ConfigMap",
        )
    )
    ingresses_watched: Gauge = field(
        default_factory=lambda: Gauge(
            "ingress_dns_sync_ingresses_watched",
            "Ingresses in scope at the last reconciliation, per namespace",
            ["namespace"],
        )
    )
    artifact_updates_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_dns_sync_artifact_updates_total",
            "Writes of the generated rewrite-rule ConfigMap",
            ["result"],
        )
    )
    artifact_update_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "ingress_dns_sync_artifact_update_duration_seconds",
            "Time spent converging the generated rewrite-rule ConfigMap",
            ["result"],
        )
    )
    conflict_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_dns_sync_conflict_retries_total",
            "Optimistic-concurrency retries by resource",
            ["resource"],
        )
    )
    config_drift_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_dns_sync_coredns_config_drift_total",
            "CoreDNS wiring found missing and restored",
            ["drift_type"],
        )
    )
    events_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_dns_sync_events_total",
            "Watch events observed, by resource and whether they enqueued a pass",
            ["resource", "enqueued"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_dns_sync_watch_errors_total",
            "Total Kubernetes watch errors",
            ["resource"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_dns_sync_watch_reconnects_total",
            "Watch stream reconnects after the initial connection",
            ["resource"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "ingress_dns_sync_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "ingress_dns_sync_leader_election_status",
            "Whether this replica is currently leader (1=yes, 0=no)",
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "ingress_dns_sync_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "ingress_dns_sync",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
