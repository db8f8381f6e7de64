from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from bundlesync.src.config import LeaderElectionConfig
from bundlesync.src.leader import LeaseLeaderElector
from bundlesync.src.metrics import METRICS


def _make_elector(
    coordination_api: Any = None,
    namespace: str = "bundlesync",
    lease_name: str = "test-lease",
    identity: str = "pod-1",
    lease_duration_seconds: int = 15,
    renew_deadline_seconds: int = 10,
    retry_period_seconds: int = 0,
) -> LeaseLeaderElector:
    return LeaseLeaderElector(
        coordination_api=coordination_api or MagicMock(),
        namespace=namespace,
        lease_name=lease_name,
        identity=identity,
        lease_duration_seconds=lease_duration_seconds,
        renew_deadline_seconds=renew_deadline_seconds,
        retry_period_seconds=retry_period_seconds,
    )


def _lease(holder: str | None, renewed_ago: float, acquired_ago: float = 30) -> V1Lease:
    now = datetime.now(UTC)
    return V1Lease(
        metadata=V1ObjectMeta(name="test-lease", namespace="bundlesync", resource_version="7"),
        spec=V1LeaseSpec(
            holder_identity=holder,
            lease_duration_seconds=15,
            renew_time=now - timedelta(seconds=renewed_ago),
            acquire_time=now - timedelta(seconds=acquired_ago),
        ),
    )


def test_creates_lease_when_not_found() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = ApiException(status=404, reason="Not Found")

    elector = _make_elector(coordination_api=api, identity="pod-1")
    result = elector.try_acquire_or_renew()

    assert result is True
    api.create_namespaced_lease.assert_called_once()
    call_kwargs = api.create_namespaced_lease.call_args.kwargs
    assert call_kwargs["namespace"] == "bundlesync"
    assert call_kwargs["body"].spec.holder_identity == "pod-1"
    assert call_kwargs["body"].spec.lease_duration_seconds == 15


def test_renews_lease_when_already_holder() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = _lease("pod-1", renewed_ago=5)

    elector = _make_elector(coordination_api=api, identity="pod-1")

    assert elector.try_acquire_or_renew() is True
    api.replace_namespaced_lease.assert_called_once()
    body = api.replace_namespaced_lease.call_args.kwargs["body"]
    assert body.metadata.resource_version == "7"


def test_does_not_acquire_when_another_holder_active() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = _lease("pod-2", renewed_ago=2, acquired_ago=10)

    elector = _make_elector(coordination_api=api, identity="pod-1")

    assert elector.try_acquire_or_renew() is False
    api.replace_namespaced_lease.assert_not_called()


def test_acquires_expired_lease_from_another_holder() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = _lease("pod-2", renewed_ago=60, acquired_ago=120)

    elector = _make_elector(coordination_api=api, identity="pod-1")

    assert elector.try_acquire_or_renew() is True


def test_acquires_released_lease() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = _lease(None, renewed_ago=1)

    elector = _make_elector(coordination_api=api, identity="pod-1")

    assert elector.try_acquire_or_renew() is True
    body = api.replace_namespaced_lease.call_args.kwargs["body"]
    assert body.spec.holder_identity == "pod-1"


def test_handles_409_conflict_on_create() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = ApiException(status=404, reason="Not Found")
    api.create_namespaced_lease.side_effect = ApiException(status=409, reason="Conflict")

    elector = _make_elector(coordination_api=api, identity="pod-1")

    assert elector.try_acquire_or_renew() is False


def test_handles_409_conflict_on_takeover() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = _lease("pod-2", renewed_ago=60)
    api.replace_namespaced_lease.side_effect = ApiException(status=409, reason="Conflict")

    elector = _make_elector(coordination_api=api, identity="pod-1")

    assert elector.try_acquire_or_renew() is False


def test_read_failure_does_not_claim_lease() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = ApiException(status=500, reason="boom")

    elector = _make_elector(coordination_api=api)

    assert elector.try_acquire_or_renew() is False
    api.create_namespaced_lease.assert_not_called()
    api.replace_namespaced_lease.assert_not_called()


def test_acquire_time_updated_on_takeover() -> None:
    existing = _lease("pod-2", renewed_ago=60, acquired_ago=120)
    old_acquire = existing.spec.acquire_time
    api = MagicMock()
    api.read_namespaced_lease.return_value = existing

    elector = _make_elector(coordination_api=api, identity="pod-1")

    assert elector.try_acquire_or_renew() is True
    body = api.replace_namespaced_lease.call_args.kwargs["body"]
    assert body.spec.acquire_time != old_acquire
    assert body.spec.holder_identity == "pod-1"


def test_acquire_time_preserved_on_renewal() -> None:
    existing = _lease("pod-1", renewed_ago=5, acquired_ago=30)
    original_acquire = existing.spec.acquire_time
    api = MagicMock()
    api.read_namespaced_lease.return_value = existing

    elector = _make_elector(coordination_api=api, identity="pod-1")

    assert elector.try_acquire_or_renew() is True
    body = api.replace_namespaced_lease.call_args.kwargs["body"]
    assert body.spec.acquire_time == original_acquire


def test_run_calls_on_started_leading() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = ApiException(status=404, reason="Not Found")

    elector = _make_elector(coordination_api=api, identity="pod-1")

    stop = threading.Event()
    started = threading.Event()
    stopped = threading.Event()

    def on_started() -> None:
        started.set()
        stop.set()

    elector.run(
        on_started_leading=on_started,
        on_stopped_leading=stopped.set,
        stop_event=stop,
    )

    assert started.is_set()
    assert stopped.is_set()
    assert not elector.is_leader


def test_non_api_exception_does_not_crash_election_loop() -> None:
    api = MagicMock()
    call_count = 0

    def flaky_read(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        if call_count == 1:
            raise ConnectionError("network blip")
        raise ApiException(status=404, reason="Not Found")

    api.read_namespaced_lease.side_effect = flaky_read

    elector = _make_elector(coordination_api=api, identity="pod-1")

    stop = threading.Event()
    started = threading.Event()

    def on_started() -> None:
        started.set()
        stop.set()

    elector.run(
        on_started_leading=on_started,
        on_stopped_leading=lambda: None,
        stop_event=stop,
    )

    assert call_count >= 2
    assert started.is_set()


def test_release_lease_on_shutdown() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = [
        _lease("pod-1", renewed_ago=0),
        _lease("pod-1", renewed_ago=0),
    ]

    elector = _make_elector(coordination_api=api, identity="pod-1")

    stop = threading.Event()
    elector.run(
        on_started_leading=stop.set,
        on_stopped_leading=lambda: None,
        stop_event=stop,
    )

    released_body = api.replace_namespaced_lease.call_args_list[-1].kwargs["body"]
    assert released_body.spec.holder_identity is None


def test_release_skips_lease_held_by_another_identity() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = _lease("pod-2", renewed_ago=0)

    _make_elector(coordination_api=api, identity="pod-1").release()

    api.replace_namespaced_lease.assert_not_called()


def test_constructor_rejects_invalid_timing_relationships() -> None:
    with pytest.raises(ValueError, match="smaller than lease_duration_seconds"):
        _make_elector(lease_duration_seconds=10, renew_deadline_seconds=10)

    with pytest.raises(ValueError, match="smaller than renew_deadline_seconds"):
        _make_elector(lease_duration_seconds=15, renew_deadline_seconds=5, retry_period_seconds=5)


def test_from_config_copies_settings() -> None:
    api = MagicMock()
    elector = LeaseLeaderElector.from_config(
        api,
        LeaderElectionConfig(
            enabled=True,
            namespace="ops",
            lease_name="bundlesync-leader",
            identity="pod-9",
            lease_duration_seconds=20,
            renew_deadline_seconds=12,
            retry_period_seconds=3,
        ),
    )

    assert elector.coordination_api is api
    assert elector.namespace == "ops"
    assert elector.lease_name == "bundlesync-leader"
    assert elector.identity == "pod-9"
    assert elector.lease_duration_seconds == 20
    assert elector.renew_deadline_seconds == 12
    assert elector.retry_period_seconds == 3


def test_loses_leadership_after_renew_deadline_expires() -> None:
    elector = _make_elector(renew_deadline_seconds=1, retry_period_seconds=0)
    stop = threading.Event()
    stopped_calls = 0

    def on_stopped() -> None:
        nonlocal stopped_calls
        stopped_calls += 1
        stop.set()

    with (
        pytest.MonkeyPatch.context() as mp,
        patch.object(elector, "try_acquire_or_renew", side_effect=[True, False]),
        patch.object(elector, "release") as release_mock,
    ):
        mp.setattr(
            "bundlesync.src.leader.time.monotonic",
            MagicMock(side_effect=[0.0, 0.1, 1.5, 1.6]),
        )
        elector.run(
            on_started_leading=lambda: None,
            on_stopped_leading=on_stopped,
            stop_event=stop,
        )

    assert stopped_calls == 1
    release_mock.assert_not_called()


def test_keeps_leadership_when_failure_is_within_renew_deadline() -> None:
    elector = _make_elector(renew_deadline_seconds=3, retry_period_seconds=0)
    stop = threading.Event()
    stopped_calls = 0

    def on_stopped() -> None:
        nonlocal stopped_calls
        stopped_calls += 1

    calls = 0

    def try_cycle() -> bool:
        nonlocal calls
        calls += 1
        if calls == 1:
            return True
        stop.set()
        return False

    with (
        pytest.MonkeyPatch.context() as mp,
        patch.object(elector, "try_acquire_or_renew", side_effect=try_cycle),
        patch.object(elector, "release") as release_mock,
    ):
        mp.setattr("bundlesync.src.leader.time.monotonic", MagicMock(side_effect=[0.0, 0.1, 0.5]))
        elector.run(
            on_started_leading=lambda: None,
            on_stopped_leading=on_stopped,
            stop_event=stop,
        )

    assert stopped_calls == 1
    release_mock.assert_called_once()


def test_leader_metrics_track_acquire_latency_and_transitions() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = ApiException(status=404, reason="Not Found")

    elector = _make_elector(coordination_api=api, identity="pod-1")
    stop = threading.Event()

    acquired_before = METRICS.leader_transitions_total.labels(transition="acquired")._value.get()
    lost_before = METRICS.leader_transitions_total.labels(transition="lost")._value.get()
    latency_sum_before = METRICS.leader_acquire_latency_seconds._sum.get()

    with pytest.MonkeyPatch.context() as mp:
        mp.setattr("bundlesync.src.leader.time.monotonic", MagicMock(side_effect=[10.0, 14.0]))
        elector.run(
            on_started_leading=stop.set,
            on_stopped_leading=lambda: None,
            stop_event=stop,
        )

    acquired_after = METRICS.leader_transitions_total.labels(transition="acquired")._value.get()
    lost_after = METRICS.leader_transitions_total.labels(transition="lost")._value.get()
    latency_sum_after = METRICS.leader_acquire_latency_seconds._sum.get()

    assert acquired_after - acquired_before == 1
    assert lost_after - lost_before == 1
    assert latency_sum_after - latency_sum_before == pytest.approx(4.0)
    assert METRICS.leader_state._value.get() == 0
