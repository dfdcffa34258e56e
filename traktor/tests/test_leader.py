from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from traktor.src.config import LeaderElectionConfig
from traktor.src.leader import LeaseLeaderElector
from traktor.src.metrics import METRICS

NAMESPACE = "traktor-system"
LEASE_NAME = "traktor-controller-leader"


def _make_elector(
    coordination_api: Any = None,
    identity: str = "traktor-0",
    renew_deadline_seconds: int = 10,
    retry_period_seconds: int = 0,
) -> LeaseLeaderElector:
    return LeaseLeaderElector(
        coordination_api=coordination_api or MagicMock(),
        namespace=NAMESPACE,
        settings=LeaderElectionConfig(
            lease_name=LEASE_NAME,
            identity=identity,
            lease_duration_seconds=15,
            renew_deadline_seconds=renew_deadline_seconds,
            retry_period_seconds=retry_period_seconds,
        ),
    )


def _lease(
    holder: str | None,
    renewed_ago: float | None = 5,
    acquired_ago: float = 30,
) -> V1Lease:
    now = datetime.now(UTC)
    return V1Lease(
        metadata=V1ObjectMeta(name=LEASE_NAME, namespace=NAMESPACE),
        spec=V1LeaseSpec(
            holder_identity=holder,
            lease_duration_seconds=15,
            renew_time=None if renewed_ago is None else now - timedelta(seconds=renewed_ago),
            acquire_time=now - timedelta(seconds=acquired_ago),
        ),
    )


def _missing_lease_api() -> MagicMock:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = ApiException(status=404, reason="Not Found")
    api.create_namespaced_lease.return_value = None
    return api


def test_elector_exposes_settings() -> None:
    elector = _make_elector(identity="traktor-1")

    assert elector.lease_name == LEASE_NAME
    assert elector.identity == "traktor-1"
    assert elector.is_leader is False


def test_creates_lease_when_not_found() -> None:
    api = _missing_lease_api()

    assert _make_elector(coordination_api=api)._try_acquire_or_renew() is True

    body = api.create_namespaced_lease.call_args.kwargs["body"]
    assert api.create_namespaced_lease.call_args.kwargs["namespace"] == NAMESPACE
    assert body.spec.holder_identity == "traktor-0"
    assert body.spec.lease_duration_seconds == 15


@pytest.mark.parametrize("status", [409, 500])
def test_create_failure_is_a_missed_cycle(status: int) -> None:
    api = _missing_lease_api()
    api.create_namespaced_lease.side_effect = ApiException(status=status, reason="nope")

    assert _make_elector(coordination_api=api)._try_acquire_or_renew() is False


def test_read_failure_is_a_missed_cycle() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = ApiException(status=500, reason="boom")

    assert _make_elector(coordination_api=api)._try_acquire_or_renew() is False
    api.create_namespaced_lease.assert_not_called()


def test_renewal_keeps_acquire_time() -> None:
    existing = _lease("traktor-0")
    original_acquire = existing.spec.acquire_time
    api = MagicMock()
    api.read_namespaced_lease.return_value = existing

    assert _make_elector(coordination_api=api)._try_acquire_or_renew() is True

    body = api.replace_namespaced_lease.call_args.kwargs["body"]
    assert body.spec.acquire_time == original_acquire
    assert body.spec.holder_identity == "traktor-0"


def test_active_lease_of_another_replica_is_respected() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = _lease("traktor-1", renewed_ago=2)

    assert _make_elector(coordination_api=api)._try_acquire_or_renew() is False
    api.replace_namespaced_lease.assert_not_called()


@pytest.mark.parametrize("renewed_ago", [60, None])
def test_expired_lease_is_taken_over_with_fresh_acquire_time(renewed_ago: float | None) -> None:
    existing = _lease("traktor-1", renewed_ago=renewed_ago, acquired_ago=120)
    stale_acquire = existing.spec.acquire_time
    api = MagicMock()
    api.read_namespaced_lease.return_value = existing

    assert _make_elector(coordination_api=api)._try_acquire_or_renew() is True

    body = api.replace_namespaced_lease.call_args.kwargs["body"]
    assert body.spec.holder_identity == "traktor-0"
    assert body.spec.acquire_time != stale_acquire


def test_released_lease_is_claimed_immediately() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = _lease(None, renewed_ago=1)

    assert _make_elector(coordination_api=api)._try_acquire_or_renew() is True


def test_update_conflict_is_a_missed_cycle() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = _lease("traktor-0")
    api.replace_namespaced_lease.side_effect = ApiException(status=409, reason="Conflict")

    assert _make_elector(coordination_api=api)._try_acquire_or_renew() is False


def test_run_starts_leading_and_releases_on_stop() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = [_lease("traktor-0"), _lease("traktor-0")]
    elector = _make_elector(coordination_api=api)
    stop = threading.Event()
    events: list[str] = []

    def on_started() -> None:
        events.append("started")
        stop.set()

    elector.run(
        on_started_leading=on_started,
        on_stopped_leading=lambda: events.append("stopped"),
        stop_event=stop,
    )

    assert events == ["started", "stopped"]
    assert not elector.is_leader
    released = api.replace_namespaced_lease.call_args_list[-1].kwargs["body"]
    assert released.spec.holder_identity is None


def test_unexpected_error_does_not_end_campaign() -> None:
    api = _missing_lease_api()
    api.read_namespaced_lease.side_effect = [
        ConnectionError("network blip"),
        ApiException(status=404, reason="Not Found"),
        ApiException(status=404, reason="Not Found"),
    ]
    elector = _make_elector(coordination_api=api)
    stop = threading.Event()
    started = threading.Event()

    def on_started() -> None:
        started.set()
        stop.set()

    elector.run(on_started_leading=on_started, on_stopped_leading=lambda: None, stop_event=stop)

    assert started.is_set()
    assert api.read_namespaced_lease.call_count >= 2


def test_steps_down_after_renew_deadline() -> None:
    elector = _make_elector(renew_deadline_seconds=1)
    stop = threading.Event()
    stopped: list[bool] = []

    def on_stopped() -> None:
        stopped.append(True)
        stop.set()

    with (
        patch.object(elector, "_try_acquire_or_renew", side_effect=[True, False]),
        patch.object(elector, "_release_lease") as release_mock,
        patch(
            "traktor.src.leader.time.monotonic",
            MagicMock(side_effect=[0.0, 0.1, 1.5, 1.6]),
        ),
    ):
        elector.run(
            on_started_leading=lambda: None, on_stopped_leading=on_stopped, stop_event=stop
        )

    assert stopped == [True]
    release_mock.assert_not_called()


def test_keeps_leading_within_renew_deadline() -> None:
    elector = _make_elector(renew_deadline_seconds=3)
    stop = threading.Event()
    stopped: list[bool] = []
    cycles = iter([True, False])

    def try_cycle() -> bool:
        held = next(cycles)
        if not held:
            stop.set()
        return held

    with (
        patch.object(elector, "_try_acquire_or_renew", side_effect=try_cycle),
        patch.object(elector, "_release_lease") as release_mock,
        patch("traktor.src.leader.time.monotonic", MagicMock(side_effect=[0.0, 0.1, 0.5])),
    ):
        elector.run(
            on_started_leading=lambda: None,
            on_stopped_leading=lambda: stopped.append(True),
            stop_event=stop,
        )

    assert stopped == [True]
    release_mock.assert_called_once()


def test_leader_metrics_track_acquire_latency_and_transitions() -> None:
    elector = _make_elector(coordination_api=_missing_lease_api())
    stop = threading.Event()

    acquired = METRICS.leader_transitions_total.labels(transition="acquired")
    lost = METRICS.leader_transitions_total.labels(transition="lost")
    acquired_before = acquired._value.get()
    lost_before = lost._value.get()
    latency_sum_before = METRICS.leader_acquire_latency_seconds._sum.get()

    with patch("traktor.src.leader.time.monotonic", MagicMock(side_effect=[10.0, 14.0])):
        elector.run(
            on_started_leading=stop.set, on_stopped_leading=lambda: None, stop_event=stop
        )

    assert acquired._value.get() - acquired_before == 1
    assert lost._value.get() - lost_before == 1
    assert METRICS.leader_acquire_latency_seconds._sum.get() - latency_sum_before == (
        pytest.approx(4.0)
    )
    assert METRICS.leader_state._value.get() == 0
