from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from controller.src.config import LeaderElectionConfig
from controller.src.leader import LeaseLeaderElector
from controller.src.metrics import METRICS

NAMESPACE = "tracing-system"
LEASE = "tracing-controller-leader"


def _make_elector(
    coordination_api: Any = None,
    identity: str = "controller-0",
    lease_duration_seconds: int = 15,
    renew_deadline_seconds: int = 10,
    retry_period_seconds: int = 0,
) -> LeaseLeaderElector:
    return LeaseLeaderElector(
        coordination_api=coordination_api or MagicMock(),
        namespace=NAMESPACE,
        lease_name=LEASE,
        identity=identity,
        lease_duration_seconds=lease_duration_seconds,
        renew_deadline_seconds=renew_deadline_seconds,
        retry_period_seconds=retry_period_seconds,
    )


def _lease(holder: str | None, renewed_ago: float, acquired_ago: float = 60) -> V1Lease:
    now = datetime.now(UTC)
    return V1Lease(
        metadata=V1ObjectMeta(name=LEASE, namespace=NAMESPACE),
        spec=V1LeaseSpec(
            holder_identity=holder,
            lease_duration_seconds=15,
            renew_time=now - timedelta(seconds=renewed_ago),
            acquire_time=now - timedelta(seconds=acquired_ago),
        ),
    )


def _api_with_lease(lease: V1Lease | None) -> MagicMock:
    api = MagicMock()
    if lease is None:
        api.read_namespaced_lease.side_effect = ApiException(status=404, reason="Not Found")
    else:
        api.read_namespaced_lease.return_value = lease
    return api


def _run_until_started(elector: LeaseLeaderElector, on_stopped: Any = None) -> threading.Event:
    stop = threading.Event()
    started = threading.Event()

    def on_started() -> None:
        started.set()
        stop.set()

    elector.run(
        on_started_leading=on_started,
        on_stopped_leading=on_stopped or (lambda: None),
        stop_event=stop,
    )
    return started


def test_creates_missing_lease() -> None:
    api = _api_with_lease(None)

    assert _make_elector(coordination_api=api)._try_acquire_or_renew() is True

    body = api.create_namespaced_lease.call_args.kwargs["body"]
    assert body.spec.holder_identity == "controller-0"
    assert body.metadata.namespace == NAMESPACE
    assert api.create_namespaced_lease.call_args.kwargs["namespace"] == NAMESPACE


def test_create_conflict_means_another_replica_won() -> None:
    api = _api_with_lease(None)
    api.create_namespaced_lease.side_effect = ApiException(status=409, reason="Conflict")

    assert _make_elector(coordination_api=api)._try_acquire_or_renew() is False


def test_read_failure_is_not_leadership() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = ApiException(status=500, reason="boom")

    assert _make_elector(coordination_api=api)._try_acquire_or_renew() is False
    api.replace_namespaced_lease.assert_not_called()


def test_renewal_keeps_acquire_time() -> None:
    lease = _lease("controller-0", renewed_ago=5, acquired_ago=30)
    original_acquire = lease.spec.acquire_time
    api = _api_with_lease(lease)

    assert _make_elector(coordination_api=api)._try_acquire_or_renew() is True

    body = api.replace_namespaced_lease.call_args.kwargs["body"]
    assert body.spec.acquire_time == original_acquire
    assert body.spec.renew_time > original_acquire


def test_active_lease_of_another_holder_is_respected() -> None:
    api = _api_with_lease(_lease("controller-1", renewed_ago=2))

    assert _make_elector(coordination_api=api)._try_acquire_or_renew() is False
    api.replace_namespaced_lease.assert_not_called()


def test_expired_lease_is_taken_over() -> None:
    lease = _lease("controller-1", renewed_ago=60, acquired_ago=120)
    stale_acquire = lease.spec.acquire_time
    api = _api_with_lease(lease)

    assert _make_elector(coordination_api=api)._try_acquire_or_renew() is True

    body = api.replace_namespaced_lease.call_args.kwargs["body"]
    assert body.spec.holder_identity == "controller-0"
    assert body.spec.acquire_time != stale_acquire


def test_released_lease_is_taken_over_immediately() -> None:
    api = _api_with_lease(_lease(None, renewed_ago=1))

    assert _make_elector(coordination_api=api)._try_acquire_or_renew() is True


def test_naive_renew_time_is_treated_as_utc() -> None:
    lease = _lease("controller-1", renewed_ago=2)
    lease.spec.renew_time = lease.spec.renew_time.replace(tzinfo=None)
    api = _api_with_lease(lease)

    assert _make_elector(coordination_api=api)._try_acquire_or_renew() is False


def test_run_invokes_started_callback_and_releases_on_stop() -> None:
    api = _api_with_lease(None)
    released = _lease("controller-0", renewed_ago=0)
    api.read_namespaced_lease.side_effect = [
        ApiException(status=404, reason="Not Found"),
        released,
    ]
    stopped: list[bool] = []

    elector = _make_elector(coordination_api=api)
    started = _run_until_started(elector, on_stopped=lambda: stopped.append(True))

    assert started.is_set()
    assert stopped == [True]
    assert not elector.is_leader
    released_body = api.replace_namespaced_lease.call_args.kwargs["body"]
    assert released_body.spec.holder_identity is None


def test_unexpected_errors_do_not_end_the_campaign() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = [
        ConnectionError("network blip"),
        ApiException(status=404, reason="Not Found"),
        ApiException(status=404, reason="Not Found"),
    ]

    started = _run_until_started(_make_elector(coordination_api=api))

    assert started.is_set()
    assert api.read_namespaced_lease.call_count >= 2


def test_steps_down_once_renew_deadline_passes() -> None:
    elector = _make_elector(renew_deadline_seconds=1)
    stop = threading.Event()
    stopped_calls = 0

    def on_stopped() -> None:
        nonlocal stopped_calls
        stopped_calls += 1
        stop.set()

    with (
        pytest.MonkeyPatch.context() as mp,
        patch.object(elector, "_try_acquire_or_renew", side_effect=[True, False]),
        patch.object(elector, "_release_lease") as release_mock,
    ):
        mp.setattr(
            "controller.src.leader.time.monotonic",
            MagicMock(side_effect=[0.0, 0.1, 1.5, 1.6]),
        )
        elector.run(on_started_leading=lambda: None, on_stopped_leading=on_stopped, stop_event=stop)

    assert stopped_calls == 1
    assert not elector.is_leader
    release_mock.assert_not_called()


def test_holds_leadership_through_short_renewal_failures() -> None:
    elector = _make_elector(renew_deadline_seconds=3)
    stop = threading.Event()
    stopped_calls = 0
    cycles = 0

    def on_stopped() -> None:
        nonlocal stopped_calls
        stopped_calls += 1

    def try_cycle() -> bool:
        nonlocal cycles
        cycles += 1
        if cycles == 1:
            return True
        stop.set()
        return False

    with (
        pytest.MonkeyPatch.context() as mp,
        patch.object(elector, "_try_acquire_or_renew", side_effect=try_cycle),
        patch.object(elector, "_release_lease") as release_mock,
    ):
        mp.setattr("controller.src.leader.time.monotonic", MagicMock(side_effect=[0.0, 0.1, 0.5]))
        elector.run(on_started_leading=lambda: None, on_stopped_leading=on_stopped, stop_event=stop)

    # The only stop callback comes from the graceful shutdown, not the failed renewal.
    assert stopped_calls == 1
    release_mock.assert_called_once()


def test_leader_metrics_track_acquire_latency_and_transitions() -> None:
    elector = _make_elector(coordination_api=_api_with_lease(None))
    acquired = METRICS.leader_transitions_total.labels(transition="acquired")
    lost = METRICS.leader_transitions_total.labels(transition="lost")
    acquired_before = acquired._value.get()
    lost_before = lost._value.get()
    latency_before = METRICS.leader_acquire_latency_seconds._sum.get()

    with pytest.MonkeyPatch.context() as mp:
        mp.setattr("controller.src.leader.time.monotonic", MagicMock(side_effect=[10.0, 14.0]))
        _run_until_started(elector)

    assert acquired._value.get() - acquired_before == 1
    assert lost._value.get() - lost_before == 1
    assert METRICS.leader_acquire_latency_seconds._sum.get() - latency_before == pytest.approx(4.0)
    assert METRICS.leader_state._value.get() == 0


def test_from_config_copies_settings() -> None:
    settings = LeaderElectionConfig(
        namespace="observability",
        lease_name="custom-lease",
        identity="replica-a",
        lease_duration_seconds=20,
        renew_deadline_seconds=12,
        retry_period_seconds=3,
        controller_stop_timeout_seconds=45,
    )

    elector = LeaseLeaderElector.from_config(MagicMock(), settings)

    assert elector.namespace == "observability"
    assert elector.lease_name == "custom-lease"
    assert elector.identity == "replica-a"
    assert elector.lease_duration_seconds == 20
    assert elector.renew_deadline_seconds == 12
    assert elector.retry_period_seconds == 3


def test_constructor_rejects_invalid_timing_relationships() -> None:
    with pytest.raises(
        ValueError, match="renew_deadline_seconds must be smaller than lease_duration_seconds"
    ):
        _make_elector(lease_duration_seconds=10, renew_deadline_seconds=10)

    with pytest.raises(
        ValueError, match="retry_period_seconds must be smaller than renew_deadline_seconds"
    ):
        _make_elector(lease_duration_seconds=15, renew_deadline_seconds=5, retry_period_seconds=5)
