from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from bundlesync.src.config import LeaderElectionConfig
from bundlesync.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class LeaseLeaderElector:
    """Single-writer guard built on a ``coordination.k8s.io/v1`` Lease.

    Several controller replicas may run, but only the Lease holder runs the
    watch loops and writes ConfigMaps. Each cycle (every
    ``retry_period_seconds``):

    - no Lease: create it holding our identity;
    - our Lease: renew ``renewTime``;
    - someone else's Lease renewed within ``leaseDurationSeconds``: wait;
    - someone else's expired Lease: take it over.

    Writes are guarded by the Lease's resourceVersion, so a ``409`` simply
    means another replica won this cycle. A leader that cannot renew for
    ``renew_deadline_seconds`` steps down before its Lease can expire and be
    taken over, so two replicas never reconcile at the same time.
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
        now_fn: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        if lease_duration_seconds < 1:
            raise ValueError("lease_duration_seconds must be >= 1")
        if not 1 <= renew_deadline_seconds < lease_duration_seconds:
            raise ValueError(
                "renew_deadline_seconds must be >= 1 and smaller than lease_duration_seconds"
            )
        if not 0 <= retry_period_seconds < renew_deadline_seconds:
            raise ValueError(
                "retry_period_seconds must be >= 0 and smaller than renew_deadline_seconds"
            )

        self.coordination_api = coordination_api
        self.namespace = namespace
        self.lease_name = lease_name
        self.identity = identity
        self.lease_duration_seconds = lease_duration_seconds
        self.renew_deadline_seconds = renew_deadline_seconds
        self.retry_period_seconds = retry_period_seconds
        self._now = now_fn
        self._is_leader = False

    @classmethod
    def from_config(
        cls, coordination_api: CoordinationV1Api, config: LeaderElectionConfig
    ) -> LeaseLeaderElector:
        return cls(
            coordination_api=coordination_api,
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

    def _held_by_other(self, spec: V1LeaseSpec, now: datetime) -> bool:
        """Return True while another identity holds a lease that has not yet expired."""
        if spec.holder_identity in (None, "", self.identity):
            return False
        if spec.renew_time is None:
            return False
        renewed = spec.renew_time
        if renewed.tzinfo is None:
            renewed = renewed.replace(tzinfo=UTC)
        duration = spec.lease_duration_seconds or self.lease_duration_seconds
        return (now - renewed).total_seconds() < duration

    def try_acquire_or_renew(self) -> bool:
        """Run one election cycle and return whether this replica holds the lease."""
        now = self._now()
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
        except ApiException as exc:
            if exc.status == 404:
                return self._create(now)
            LOGGER.warning(
                "Could not read lease %s/%s: %s", self.namespace, self.lease_name, exc.reason
            )
            return False

        if lease.spec is not None and self._held_by_other(lease.spec, now):
            return False
        return self._claim(lease, now)

    def _create(self, now: datetime) -> bool:
        body = V1Lease(
            metadata=V1ObjectMeta(name=self.lease_name, namespace=self.namespace),
            spec=V1LeaseSpec(
                holder_identity=self.identity,
                lease_duration_seconds=self.lease_duration_seconds,
                acquire_time=now,
                renew_time=now,
            ),
        )
        try:
            self.coordination_api.create_namespaced_lease(namespace=self.namespace, body=body)
        except ApiException as exc:
            if exc.status != 409:
                LOGGER.warning("Could not create lease %s: %s", self.lease_name, exc.reason)
            return False
        LOGGER.info("Created lease %s holding identity %s", self.lease_name, self.identity)
        return True

    def _claim(self, lease: V1Lease, now: datetime) -> bool:
        spec = lease.spec or V1LeaseSpec()
        if spec.holder_identity != self.identity or spec.acquire_time is None:
            spec.acquire_time = now
        spec.holder_identity = self.identity
        spec.renew_time = now
        spec.lease_duration_seconds = self.lease_duration_seconds
        lease.spec = spec
        try:
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name, namespace=self.namespace, body=lease
            )
        except ApiException as exc:
            if exc.status != 409:
                LOGGER.warning("Could not update lease %s: %s", self.lease_name, exc.reason)
            return False
        return True

    def release(self) -> None:
        """Give the lease up so a standby replica can take over without waiting for expiry."""
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
            if lease.spec is None or lease.spec.holder_identity != self.identity:
                return
            lease.spec.holder_identity = None
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name, namespace=self.namespace, body=lease
            )
            LOGGER.info("Released lease %s", self.lease_name)
        except ApiException:
            LOGGER.warning("Could not release lease %s", self.lease_name, exc_info=True)

    def _became_leader(self, waited_seconds: float) -> None:
        self._is_leader = True
        METRICS.leader_state.set(1)
        METRICS.leader_transitions_total.labels(transition="acquired").inc()
        METRICS.leader_acquire_latency_seconds.observe(waited_seconds)
        LOGGER.info("Became leader for lease %s (identity=%s)", self.lease_name, self.identity)

    def _lost_leadership(self) -> None:
        self._is_leader = False
        METRICS.leader_state.set(0)
        METRICS.leader_transitions_total.labels(transition="lost").inc()

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Campaign until *stop_event* is set, invoking the callbacks on every transition."""
        LOGGER.info(
            "Campaigning for lease %s/%s (identity=%s)",
            self.namespace,
            self.lease_name,
            self.identity,
        )
        METRICS.leader_state.set(0)
        campaign_started = time.monotonic()
        last_renewed = campaign_started

        while not stop_event.is_set():
            try:
                held = self.try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Leader election cycle failed")
                held = False

            if held:
                last_renewed = time.monotonic()
                if not self._is_leader:
                    self._became_leader(last_renewed - campaign_started)
                    on_started_leading()
            elif self._is_leader:
                since_renewal = time.monotonic() - last_renewed
                if since_renewal >= self.renew_deadline_seconds:
                    LOGGER.warning(
                        "Stepping down: lease %s not renewed for %.2fs",
                        self.lease_name,
                        since_renewal,
                    )
                    self._lost_leadership()
                    campaign_started = time.monotonic()
                    on_stopped_leading()
                else:
                    LOGGER.warning(
                        "Lease renewal failed; %.2fs of %ss renew deadline used",
                        since_renewal,
                        self.renew_deadline_seconds,
                    )
            stop_event.wait(timeout=self.retry_period_seconds)

        if self._is_leader:
            self.release()
            self._lost_leadership()
            on_stopped_leading()
