"""Traffic management across the stacks of a stackset."""

from __future__ import annotations

from datetime import datetime

from .reconcilers import SimpleTrafficReconciler
from .state import StackContainerState, StackSetState
from .weights import all_zero, normalize_min_ready_percent, normalize_weights, round_weights


class NoStacksError(Exception):
    """Raised when there is no stack that traffic could be assigned to."""


def _created_before(first: datetime | None, second: datetime | None) -> bool:
    # An unset creation time counts as the earliest possible time.
    if second is None:
        return False
    if first is None:
        return True
    return first < second


def find_fallback_stack(
    stacks: dict[str, StackContainerState],
) -> StackContainerState | None:
    """Pick the stack to receive all traffic when no stack gets any.

    That is the stack that most recently lost its traffic, or else the
    earliest created one.
    """
    recently_used: StackContainerState | None = None
    earliest: StackContainerState | None = None

    for stack in stacks.values():
        created = stack.stack.metadata.creation_timestamp
        if earliest is None or _created_before(
            created, earliest.stack.metadata.creation_timestamp
        ):
            earliest = stack
        if stack.no_traffic_since is not None and (
            recently_used is None or stack.no_traffic_since > recently_used.no_traffic_since
        ):
            recently_used = stack

    return recently_used if recently_used is not None else earliest


class StackSetTraffic(StackSetState):
    """Stackset state that can reconcile the traffic split between its stacks."""

    def _reset_traffic(self) -> None:
        for stack in self.stack_containers.values():
            stack.desired_traffic_weight = 0.0
            stack.actual_traffic_weight = 0.0
            stack.no_traffic_since = None
            stack.prescaling_active = False
            stack.prescaling_replicas = 0
            stack.prescaling_last_traffic_increase = None

    def manage_traffic(self, current_timestamp: datetime) -> None:
        """Normalise weights, run the reconciler and update traffic bookkeeping.

        Errors of the reconciler are raised after the weights and the
        no-traffic timestamps have been brought up to date.
        """
        if not self._traffic_managed():
            self._reset_traffic()
            return

        stacks = {stack.name: stack for stack in self.stack_containers.values()}
        desired = {name: stack.desired_traffic_weight for name, stack in stacks.items()}
        actual = {name: stack.actual_traffic_weight for name, stack in stacks.items()}

        # Normalise both maps so the reconciler never sees weights that don't add up.
        for weights in (desired, actual):
            if all_zero(weights):
                fallback = find_fallback_stack(stacks)
                if fallback is None:
                    raise NoStacksError("no stacks to assign traffic to")
                weights[fallback.name] = 100.0
            else:
                normalize_weights(weights)
                round_weights(weights)

        min_ready_percent = normalize_min_ready_percent(self.stack_set.spec.min_ready_percent)
        for name, stack in stacks.items():
            stack.desired_traffic_weight = desired[name]
            stack.actual_traffic_weight = actual[name]
            stack.min_ready_percent = min_ready_percent

        reconciler = self.traffic_reconciler or SimpleTrafficReconciler()
        error: Exception | None = None
        try:
            reconciler.reconcile(stacks, current_timestamp)
        except Exception as err:  # the reconciler's error is re-raised below
            error = err
        else:
            actual = {name: stack.actual_traffic_weight for name, stack in stacks.items()}

        if all_zero(actual):
            actual = desired
        for name, stack in stacks.items():
            stack.actual_traffic_weight = actual[name]

        for stack in self.stack_containers.values():
            if stack.has_traffic():
                stack.no_traffic_since = None
            elif stack.no_traffic_since is None:
                stack.no_traffic_since = current_timestamp

        if error is not None:
            raise error