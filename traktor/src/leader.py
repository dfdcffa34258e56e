from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from traktor.src.config import LeaderElectionConfig
from traktor.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class LeaseLeaderElector:
    """Single-leader election over a ``coordination.k8s.io/v1`` Lease.

    Only the leader watches Secrets and restarts workloads, so two replicas
    never patch the same workload for the same change.  Each cycle:

    - a missing Lease is created with this replica as holder;
    - a Lease held by this replica is renewed;
    - a Lease held by someone else is taken over only once its
      ``renewTime`` is older than its ``leaseDurationSeconds``;
    - a ``409 Conflict`` means another replica wrote first, so the cycle
      counts as a miss.

    A leader that misses renewals keeps leading until
    ``renew_deadline_seconds`` have passed since its last successful renew,
    then steps down and invokes ``on_stopped_leading``.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        namespace: str,
        settings: LeaderElectionConfig,
    ) -> None:
        self.coordination_api = coordination_api
        self.namespace = namespace
        self.settings = settings
        self._is_leader = False

    @property
    def lease_name(self) -> str:
        return self.settings.lease_name

    @property
    def identity(self) -> str:
        return self.settings.identity

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def _now_utc(self) -> datetime:
        return datetime.now(UTC)

    def _lease_expired(self, spec: V1LeaseSpec, now: datetime) -> bool:
        if spec.renew_time is None:
            return True
        renewed = spec.renew_time
        if renewed.tzinfo is None:
            renewed = renewed.replace(tzinfo=UTC)
        duration = spec.lease_duration_seconds or self.settings.lease_duration_seconds
        return (now - renewed).total_seconds() >= duration

    def _try_acquire_or_renew(self) -> bool:
        """Run one election cycle; True when this replica holds the Lease afterwards."""
        now = self._now_utc()
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
        except ApiException as exc:
            if exc.status == 404:
                return self._create_lease(now)
            LOGGER.warning("Failed to read lease %s: %s", self.lease_name, exc.reason)
            return False

        spec = lease.spec
        if spec is not None and spec.holder_identity not in (None, self.identity):
            if not self._lease_expired(spec, now):
                return False
        return self._write_lease(lease, now)

    def _create_lease(self, now: datetime) -> bool:
        body = V1Lease(
            metadata=V1ObjectMeta(name=self.lease_name, namespace=self.namespace),
            spec=V1LeaseSpec(
                holder_identity=self.identity,
                lease_duration_seconds=self.settings.lease_duration_seconds,
                acquire_time=now,
                renew_time=now,
            ),
        )
        try:
            self.coordination_api.create_namespaced_lease(namespace=self.namespace, body=body)
        except ApiException as exc:
            if exc.status != 409:
                LOGGER.warning("Failed to create lease %s: %s", self.lease_name, exc.reason)
            return False
        LOGGER.info("Created leader lease %s", self.lease_name)
        return True

    def _write_lease(self, lease: V1Lease, now: datetime) -> bool:
        """Claim or renew *lease*, resetting ``acquireTime`` on a change of holder."""
        spec = lease.spec or V1LeaseSpec()
        if spec.holder_identity != self.identity or spec.acquire_time is None:
            spec.acquire_time = now
        spec.holder_identity = self.identity
        spec.renew_time = now
        spec.lease_duration_seconds = self.settings.lease_duration_seconds
        lease.spec = spec
        try:
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name, namespace=self.namespace, body=lease
            )
        except ApiException as exc:
            if exc.status != 409:
                LOGGER.warning("Failed to update lease %s: %s", self.lease_name, exc.reason)
            return False
        return True

    def _release_lease(self) -> None:
        """Clear ``holderIdentity`` so a standby replica can take over without waiting."""
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
            LOGGER.info("Released leader lease %s", self.lease_name)
        except ApiException as exc:
            LOGGER.warning("Failed to release leader lease %s: %s", self.lease_name, exc.reason)

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
        """Campaign for the Lease until *stop_event* is set.

        Callbacks run on this thread.  On exit a held Lease is released and
        ``on_stopped_leading`` is invoked.
        """
        LOGGER.info(
            "Starting leader election for lease %s/%s (identity=%s)",
            self.namespace,
            self.lease_name,
            self.identity,
        )
        waiting_since = time.monotonic()
        last_renewal = waiting_since
        METRICS.leader_state.set(0)

        while not stop_event.is_set():
            try:
                held = self._try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Unexpected error in leader election cycle")
                held = False

            if held:
                last_renewal = time.monotonic()
                if not self._is_leader:
                    self._is_leader = True
                    LOGGER.info("Became leader (identity=%s)", self.identity)
                    METRICS.leader_state.set(1)
                    METRICS.leader_transitions_total.labels(transition="acquired").inc()
                    METRICS.leader_acquire_latency_seconds.observe(last_renewal - waiting_since)
                    on_started_leading()
            elif self._is_leader:
                since_renewal = time.monotonic() - last_renewal
                if since_renewal < self.settings.renew_deadline_seconds:
                    LOGGER.warning(
                        "Lease renewal failed; still leading for up to %ss (%.2fs since renewal)",
                        self.settings.renew_deadline_seconds,
                        since_renewal,
                    )
                else:
                    LOGGER.warning("Lost leader lease after %.2fs without renewal", since_renewal)
                    waiting_since = time.monotonic()
                    self._step_down(on_stopped_leading)
            stop_event.wait(timeout=self.settings.retry_period_seconds)

        if self._is_leader:
            self._release_lease()
            self._step_down(on_stopped_leading)
