from datetime import datetime, timedelta, timezone

import pytest

from stackset.model import Autoscaler, ObjectMeta, Stack
from stackset.reconcilers import (
    PrescalingTrafficReconciler,
    SimpleTrafficReconciler,
    StacksNotReadyError,
)
from stackset.state import StackContainerState

NOW = datetime.now(timezone.utc)


def stack(
    name,
    traffic=(0.0, 0.0),
    ready=None,
    deployment=None,
    prescaling=None,
    max_replicas=None,
    replicas=None,
):
    desired, actual = traffic
    sc = StackContainerState(
        stack=Stack(metadata=ObjectMeta(name=name)),
        desired_traffic_weight=float(desired),
        actual_traffic_weight=float(actual),
        min_ready_percent=1.0,
    )
    sc.stack.spec.stack_spec.replicas = replicas
    if ready is not None:
        sc.resources_updated = True
        sc.deployment_replicas = sc.updated_replicas = sc.ready_replicas = ready
    if deployment is not None:
        (
            sc.resources_updated,
            sc.deployment_replicas,
            sc.updated_replicas,
            sc.ready_replicas,
        ) = deployment
    if prescaling is not None:
        sc.prescaling_active = True
        (
            sc.prescaling_replicas,
            sc.prescaling_desired_traffic_weight,
            sc.prescaling_last_traffic_increase,
        ) = prescaling
    if max_replicas is not None:
        sc.stack.spec.stack_spec.autoscaler = Autoscaler(max_replicas=max_replicas)
    return sc


def by_name(*stacks):
    return {s.name: s for s in stacks}


def actual_weights(stacks):
    return {name: s.actual_traffic_weight for name, s in stacks.items()}


def test_not_ready_error_message_is_sorted():
    err = StacksNotReadyError(["foo-v3", "foo-v1"])
    assert str(err) == "stacks not ready: foo-v1, foo-v3"
    assert err.stacks == ["foo-v1", "foo-v3"]


def test_simple_switches_when_ready():
    stacks = by_name(
        stack("foo-v1", (25, 70), ready=1),
        stack("foo-v2", (50, 30), ready=1),
        stack("foo-v3", (25, 0), ready=1),
    )
    SimpleTrafficReconciler().reconcile(stacks, NOW)
    assert actual_weights(stacks) == {"foo-v1": 25, "foo-v2": 50, "foo-v3": 25}


def test_simple_normalises_weights():
    stacks = by_name(
        stack("foo-v1", (1, 50), ready=1),
        stack("foo-v2", (2, 50), ready=1),
        stack("foo-v3", (1, 0), ready=1),
    )
    SimpleTrafficReconciler().reconcile(stacks, NOW)
    assert actual_weights(stacks) == {"foo-v1": 25, "foo-v2": 50, "foo-v3": 25}


def test_simple_raises_for_not_ready_stacks_and_keeps_weights():
    stacks = by_name(
        stack("foo-v1", (25, 70), ready=1),
        stack("foo-v2", (50, 30)),
        stack("foo-v3", (25, 0)),
    )
    with pytest.raises(StacksNotReadyError, match="stacks not ready: foo-v2, foo-v3"):
        SimpleTrafficReconciler().reconcile(stacks, NOW)
    assert actual_weights(stacks) == {"foo-v1": 70, "foo-v2": 30, "foo-v3": 0}


def test_simple_allows_reducing_traffic_on_not_ready_stack():
    stacks = by_name(
        stack("foo-v1", (25, 70)),
        stack("foo-v2", (50, 30), ready=1),
        stack("foo-v3", (25, 0), ready=1),
    )
    SimpleTrafficReconciler().reconcile(stacks, NOW)
    assert actual_weights(stacks) == {"foo-v1": 25, "foo-v2": 50, "foo-v3": 25}


def test_prescaling_computes_replicas_from_traffic():
    stacks = by_name(
        stack("foo-v1", (25, 50), ready=2),
        stack("foo-v2", (25, 40), deployment=(False, 3, 2, 2)),
        stack("foo-v3", (40, 10), ready=1),
        stack("foo-v4", (10, 0)),
    )
    reconciler = PrescalingTrafficReconciler(timedelta(minutes=5))
    with pytest.raises(StacksNotReadyError) as excinfo:
        reconciler.reconcile(stacks, NOW)
    assert str(excinfo.value) == "stacks not ready: foo-v3, foo-v4"
    assert stacks["foo-v3"].prescaling_replicas == 3
    assert stacks["foo-v4"].prescaling_replicas == 1
    assert stacks["foo-v3"].prescaling_desired_traffic_weight == 40
    assert stacks["foo-v3"].prescaling_last_traffic_increase == NOW
    assert stacks["foo-v1"].prescaling_active is False


def test_prescaling_capped_by_max_replicas():
    stacks = by_name(
        stack("foo-v1", (25, 50), ready=20),
        stack("foo-v2", (25, 40), ready=30),
        stack("foo-v3", (50, 10), ready=1, max_replicas=4),
    )
    with pytest.raises(StacksNotReadyError):
        PrescalingTrafficReconciler(timedelta(minutes=5)).reconcile(stacks, NOW)
    assert stacks["foo-v3"].prescaling_replicas == 4


@pytest.mark.parametrize("replicas, expected", [(3, 3), (None, 1)])
def test_prescaling_falls_back_to_stack_replicas(replicas, expected):
    stacks = by_name(stack("foo-v1", (100, 0), replicas=replicas))
    with pytest.raises(StacksNotReadyError):
        PrescalingTrafficReconciler(timedelta(minutes=5)).reconcile(stacks, NOW)
    assert stacks["foo-v1"].prescaling_replicas == expected


def test_prescaling_switches_traffic_when_replicas_are_ready():
    minute_ago = NOW - timedelta(minutes=1)
    stacks = by_name(
        stack("foo-v1", (25, 50), ready=2),
        stack("foo-v2", (25, 40), ready=4),
        stack("foo-v3", (50, 10), ready=4, prescaling=(4, 50, minute_ago)),
    )
    PrescalingTrafficReconciler(timedelta(minutes=5)).reconcile(stacks, NOW)
    assert actual_weights(stacks) == {"foo-v1": 25, "foo-v2": 25, "foo-v3": 50}
    assert stacks["foo-v3"].prescaling_active is True
    assert stacks["foo-v3"].prescaling_last_traffic_increase == NOW


def test_prescaling_reset_after_timeout():
    long_ago = datetime.now(timezone.utc) - timedelta(minutes=10)
    stacks = by_name(
        stack("foo-v1", (50, 50), ready=2),
        stack("foo-v2", (50, 50), ready=4, prescaling=(4, 50, long_ago)),
    )
    PrescalingTrafficReconciler(timedelta(minutes=5)).reconcile(stacks, NOW)
    v2 = stacks["foo-v2"]
    assert v2.prescaling_active is False
    assert v2.prescaling_replicas == 0
    assert v2.prescaling_desired_traffic_weight == 0
    assert v2.prescaling_last_traffic_increase is None


def test_prescaling_not_ready_until_prescaled_replicas_reached():
    minute_ago = NOW - timedelta(minutes=1)
    stacks = by_name(
        stack("foo-v1", (25, 50), ready=2),
        stack("foo-v2", (25, 40), ready=4),
        stack("foo-v3", (50, 10), ready=1, prescaling=(4, 50, minute_ago)),
    )
    with pytest.raises(StacksNotReadyError, match="stacks not ready: foo-v3"):
        PrescalingTrafficReconciler(timedelta(minutes=5)).reconcile(stacks, NOW)
    assert actual_weights(stacks) == {"foo-v1": 50, "foo-v2": 40, "foo-v3": 10}
    assert stacks["foo-v3"].prescaling_replicas == 4