from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from dnssync.src.config import LeaderElectionConfig
from dnssync.src.metrics import METRICS
from dnssync.src.retry import is_conflict, is_not_found

LOGGER = logging.getLogger(__name__)


class LeadershipGate(Protocol):
    """Anything the reconciler can ask whether it may mutate the cluster."""

    @property
    def is_leader(self) -> bool: ...


class StaticLeadership:
    """Fixed gate for single-replica installs with leader election disabled."""

    def __init__(self, leader: bool = True) -> None:
        self._leader = leader

    @property
    def is_leader(self) -> bool:
        return self._leader


class LeaseLeaderElector:
    """Leader election over a ``coordination.k8s.io/v1`` Lease.

    Every replica watches Ingresses and the CoreDNS objects, but only the
    holder of the Lease converges the rewrite rules and the CoreDNS wiring.
    Each cycle (every ``retry_period_seconds``):

    1. Read the Lease; create it and lead when it does not exist.
    2. Renew it when this replica is the holder.
    3. Take it over when another holder has not renewed within its
       ``leaseDurationSeconds``.
    4. Treat ``409 Conflict`` as "someone else won this round".

    A leader whose renewals keep failing steps down once
    ``renew_deadline_seconds`` have passed since its last successful renew,
    which is shorter than the lease duration so a new leader can never
    overlap with one that still believes it leads.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        namespace: str,
        lease_name: str,
        identity: str,
        lease_duration_seconds: int = 15,
        renew_deadline_seconds: int = 10,
        retry_period_seconds: int = 2,
        logger: logging.Logger | None = None,
    ) -> None:
        if lease_duration_seconds < 1:
            raise ValueError("lease_duration_seconds must be >= 1")
        if renew_deadline_seconds < 1:
            raise ValueError("renew_deadline_seconds must be >= 1")
        if retry_period_seconds < 0:
            raise ValueError("retry_period_seconds must be >= 0")
        if renew_deadline_seconds >= lease_duration_seconds:
            raise ValueError("renew_deadline_seconds must be smaller than lease_duration_seconds")
        if retry_period_seconds >= renew_deadline_seconds:
            raise ValueError("retry_period_seconds must be smaller than renew_deadline_seconds")

        self.coordination_api = coordination_api
        self.namespace = namespace
        self.lease_name = lease_name
        self.identity = identity
        self.lease_duration_seconds = lease_duration_seconds
        self.renew_deadline_seconds = renew_deadline_seconds
        self.retry_period_seconds = retry_period_seconds
        self.logger = logger or LOGGER
        self._is_leader = False

    @classmethod
    def from_config(
        cls, coordination_api: CoordinationV1Api, config: LeaderElectionConfig
    ) -> LeaseLeaderElector:
        return cls(
            coordination_api,
            namespace=config.namespace,
            lease_name=config.lease_name,
            identity=config.identity,
            lease_duration_seconds=config.lease_duration_seconds,
            renew_deadline_seconds=config.renew_deadline_seconds,
            retry_period_seconds=config.retry_period_seconds,
        )

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def _now_utc(self) -> datetime:
        return datetime.now(UTC)

    def _holder_expired(self, spec: V1LeaseSpec, now: datetime) -> bool:
        renew_time = spec.renew_time
        if renew_time is None:
            return True
        if renew_time.tzinfo is None:
            renew_time = renew_time.replace(tzinfo=UTC)
        duration = spec.lease_duration_seconds or self.lease_duration_seconds
        return (now - renew_time).total_seconds() >= duration

    def _try_acquire_or_renew(self) -> bool:
        """Run one acquire-or-renew cycle. Returns True while this replica holds the Lease."""
        now = self._now_utc()
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name,
                namespace=self.namespace,
            )
        except ApiException as exc:
            if is_not_found(exc):
                return self._create_lease(now)
            self.logger.warning("Failed to read lease %s: %s", self.lease_name, exc.reason)
            return False

        spec = lease.spec
        if spec is None or spec.holder_identity in (None, "", self.identity):
            return self._update_lease(lease, now)
        if not self._holder_expired(spec, now):
            return False
        self.logger.info(
            "Lease %s held by %s has expired; taking over",
            self.lease_name,
            spec.holder_identity,
        )
        return self._update_lease(lease, now)

    def _create_lease(self, now: datetime) -> bool:
        lease = V1Lease(
            metadata=V1ObjectMeta(name=self.lease_name, namespace=self.namespace),
            spec=V1LeaseSpec(
                holder_identity=self.identity,
                lease_duration_seconds=self.lease_duration_seconds,
                acquire_time=now,
                renew_time=now,
            ),
        )
        try:
            self.coordination_api.create_namespaced_lease(namespace=self.namespace, body=lease)
        except ApiException as exc:
            if is_conflict(exc):
                self.logger.debug("Lease %s was created by another replica", self.lease_name)
            else:
                self.logger.warning("Failed to create lease %s: %s", self.lease_name, exc.reason)
            return False
        self.logger.info("Created leader lease %s", self.lease_name)
        return True

    def _update_lease(self, lease: V1Lease, now: datetime) -> bool:
        """Write this replica into the Lease; ``acquireTime`` moves only on a change of holder."""
        if lease.spec is None:
            lease.spec = V1LeaseSpec()
        previous_holder = lease.spec.holder_identity
        lease.spec.holder_identity = self.identity
        lease.spec.renew_time = now
        lease.spec.lease_duration_seconds = self.lease_duration_seconds
        if lease.spec.acquire_time is None or previous_holder != self.identity:
            lease.spec.acquire_time = now
        try:
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name,
                namespace=self.namespace,
                body=lease,
            )
        except ApiException as exc:
            if is_conflict(exc):
                self.logger.debug("Lease %s changed underneath us, will retry", self.lease_name)
            else:
                self.logger.warning("Failed to update lease %s: %s", self.lease_name, exc.reason)
            return False
        return True

    def _release_lease(self) -> None:
        """Clear holderIdentity so a standby can take over without waiting for expiry."""
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
            if lease.spec and lease.spec.holder_identity == self.identity:
                lease.spec.holder_identity = None
                self.coordination_api.replace_namespaced_lease(
                    name=self.lease_name, namespace=self.namespace, body=lease
                )
                self.logger.info("Released leader lease %s", self.lease_name)
        except ApiException:
            self.logger.warning("Failed to release leader lease %s", self.lease_name, exc_info=True)

    def _step_down(self, on_stopped_leading: Callable[[], None]) -> None:
        self._is_leader = False
        METRICS.leader_state.set(0)
        METRICS.leader_transitions_total.labels(transition="lost").inc()
        on_stopped_leading()

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Campaign for and hold the Lease until *stop_event* is set."""
        self.logger.info(
            "Starting leader election for lease %s/%s (identity=%s)",
            self.namespace,
            self.lease_name,
            self.identity,
        )
        campaign_started = time.monotonic()
        last_renewed = campaign_started
        METRICS.leader_state.set(0)

        while not stop_event.is_set():
            try:
                held = self._try_acquire_or_renew()
            except Exception:
                self.logger.exception("Unexpected error in leader election cycle")
                held = False

            if held:
                last_renewed = time.monotonic()
                if not self._is_leader:
                    self._is_leader = True
                    self.logger.info("Became leader (identity=%s)", self.identity)
                    METRICS.leader_state.set(1)
                    METRICS.leader_transitions_total.labels(transition="acquired").inc()
                    METRICS.leader_acquire_latency_seconds.observe(last_renewed - campaign_started)
                    on_started_leading()
            elif self._is_leader:
                since_renew = time.monotonic() - last_renewed
                if since_renew < self.renew_deadline_seconds:
                    self.logger.warning(
                        "Lease renewal failed; keeping leadership for up to %ss (elapsed %.2fs)",
                        self.renew_deadline_seconds,
                        since_renew,
                    )
                else:
                    self.logger.warning(
                        "Stepping down after %.2fs without a successful renewal", since_renew
                    )
                    campaign_started = time.monotonic()
                    self._step_down(on_stopped_leading)
            stop_event.wait(timeout=self.retry_period_seconds)

        if self._is_leader:
            self._release_lease()
            self._step_down(on_stopped_leading)


def default_identity() -> str:
    """Return this replica's Lease identity: the pod name when running in a pod."""
    return os.getenv("HOSTNAME", os.getenv("POD_NAME", "unknown"))
