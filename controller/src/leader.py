from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from controller.src.config import LeaderElectionConfig
from controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class LeaseLeaderElector:
    """Leader election over a ``coordination.k8s.io/v1`` Lease.

    Only the replica holding the Lease runs the reconcile loop, so two
    replicas never patch the same deployments concurrently.  Every
    ``retry_period_seconds`` the elector reads the Lease and:

    * creates it when it does not exist;
    * renews it when this identity already holds it;
    * takes it over when the holder's ``renewTime`` is older than the lease
      duration;
    * otherwise waits.

    Write conflicts (``409``) are retried on the next cycle.  A leader that
    cannot renew for ``renew_deadline_seconds`` steps down and invokes
    ``on_stopped_leading``; the deadline is shorter than the lease duration,
    so it stops before another replica may take over.  Timestamps are UTC.
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
        self._is_leader = False

    @classmethod
    def from_config(
        cls, coordination_api: CoordinationV1Api, settings: LeaderElectionConfig
    ) -> LeaseLeaderElector:
        return cls(
            coordination_api=coordination_api,
            namespace=settings.namespace,
            lease_name=settings.lease_name,
            identity=settings.identity,
            lease_duration_seconds=settings.lease_duration_seconds,
            renew_deadline_seconds=settings.renew_deadline_seconds,
            retry_period_seconds=settings.retry_period_seconds,
        )

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def _now_utc(self) -> datetime:
        return datetime.now(UTC)

    def _held_by_other(self, spec: V1LeaseSpec, now: datetime) -> bool:
        """True while another identity holds an unexpired lease."""
        if not spec.holder_identity or spec.holder_identity == self.identity:
            return False
        if spec.renew_time is None:
            return False
        renew_time = spec.renew_time
        if renew_time.tzinfo is None:
            renew_time = renew_time.replace(tzinfo=UTC)
        duration = spec.lease_duration_seconds or self.lease_duration_seconds
        return (now - renew_time).total_seconds() < duration

    def _try_acquire_or_renew(self) -> bool:
        """Run one acquire-or-renew cycle and return whether we hold the lease."""
        now = self._now_utc()
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name,
                namespace=self.namespace,
            )
        except ApiException as exc:
            if exc.status == 404:
                return self._create_lease(now)
            LOGGER.warning("Failed to read lease %s: %s", self.lease_name, exc.reason)
            return False

        if lease.spec is not None and self._held_by_other(lease.spec, now):
            return False
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
            self._log_write_failure("create", exc)
            return False
        LOGGER.info("Created leader lease %s/%s", self.namespace, self.lease_name)
        return True

    def _update_lease(self, lease: V1Lease, now: datetime) -> bool:
        """Write our identity and a fresh ``renewTime`` into *lease*.

        ``acquireTime`` only moves when the holder changes.
        """
        spec = lease.spec or V1LeaseSpec()
        lease.spec = spec
        if spec.acquire_time is None or spec.holder_identity != self.identity:
            spec.acquire_time = now
        spec.holder_identity = self.identity
        spec.renew_time = now
        spec.lease_duration_seconds = self.lease_duration_seconds
        try:
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name,
                namespace=self.namespace,
                body=lease,
            )
        except ApiException as exc:
            self._log_write_failure("update", exc)
            return False
        return True

    def _log_write_failure(self, action: str, exc: ApiException) -> None:
        if exc.status == 409:
            LOGGER.debug("Conflict on lease %s %s; retrying next cycle", self.lease_name, action)
        else:
            LOGGER.warning("Failed to %s lease %s: %s", action, self.lease_name, exc.reason)

    def _release_lease(self) -> None:
        """Clear ``holderIdentity`` so a standby replica can take over immediately."""
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
        except Exception:
            LOGGER.warning("Failed to release leader lease %s", self.lease_name, exc_info=True)

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
        """Campaign for the lease until *stop_event* is set.

        Callbacks run on the calling thread.  On exit a held lease is
        released and ``on_stopped_leading`` is invoked.
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
                holds_lease = self._try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Unexpected error in leader election cycle")
                holds_lease = False

            if holds_lease:
                if not self._is_leader:
                    self._is_leader = True
                    last_renewal = time.monotonic()
                    LOGGER.info("Became leader (identity=%s)", self.identity)
                    METRICS.leader_state.set(1)
                    METRICS.leader_transitions_total.labels(transition="acquired").inc()
                    METRICS.leader_acquire_latency_seconds.observe(last_renewal - waiting_since)
                    on_started_leading()
                else:
                    last_renewal = time.monotonic()
            elif self._is_leader:
                since_renewal = time.monotonic() - last_renewal
                if since_renewal < self.renew_deadline_seconds:
                    LOGGER.warning(
                        "Lease renewal failed; keeping leadership for up to %ss (elapsed %.2fs)",
                        self.renew_deadline_seconds,
                        since_renewal,
                    )
                else:
                    LOGGER.warning(
                        "Lost leader lease after %.2fs without a successful renewal",
                        since_renewal,
                    )
                    waiting_since = time.monotonic()
                    self._step_down(on_stopped_leading)
            stop_event.wait(timeout=self.retry_period_seconds)

        if self._is_leader:
            self._release_lease()
            self._step_down(on_stopped_leading)
