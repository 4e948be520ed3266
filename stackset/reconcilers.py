"""Traffic reconcilers that move actual traffic weights towards the desired ones."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Protocol

from .model import effective_replicas
from .state import StackContainerState
from .weights import normalize_weights


class StacksNotReadyError(Exception):
    """Raised when traffic cannot be increased because some stacks are not ready."""

    def __init__(self, stacks: Iterable[str]) -> None:
        self.stacks = sorted(stacks)
        super().__init__(f"stacks not ready: {', '.join(self.stacks)}")


class TrafficReconciler(Protocol):
    """Something that switches traffic and/or scales stacks."""

    def reconcile(
        self, stacks: dict[str, StackContainerState], current_timestamp: datetime
    ) -> None:
        """Update the stacks' actual traffic weights; the result must be normalised."""
        ...


def _elapsed_since(timestamp: datetime) -> timedelta:
    return datetime.now(timestamp.tzinfo) - timestamp


def _apply_weights(stacks: dict[str, StackContainerState], weights: dict[str, float]) -> None:
    normalize_weights(weights)
    for name, stack in stacks.items():
        stack.actual_traffic_weight = weights.get(name, 0.0)


@dataclass(frozen=True)
class SimpleTrafficReconciler:
    """Switches traffic directly, as long as the stacks gaining traffic are ready."""

    def reconcile(
        self, stacks: dict[str, StackContainerState], current_timestamp: datetime
    ) -> None:
        not_ready = [
            name
            for name, stack in stacks.items()
            if stack.desired_traffic_weight > stack.actual_traffic_weight and not stack.is_ready()
        ]
        if not_ready:
            raise StacksNotReadyError(not_ready)

        weights = {name: stack.desired_traffic_weight for name, stack in stacks.items()}
        _apply_weights(stacks, weights)


@dataclass(frozen=True)
class PrescalingTrafficReconciler:
    """Scales stacks up before switching traffic to them."""

    reset_hpa_min_replicas_timeout: timedelta

    @staticmethod
    def _replicas_per_traffic(stacks: Iterable[StackContainerState]) -> tuple[float, float]:
        total_replicas = 0.0
        total_traffic = 0.0
        for stack in stacks:
            if stack.prescaling_active:
                if (
                    stack.deployment_replicas <= stack.prescaling_replicas
                    and stack.prescaling_desired_traffic_weight > 0
                ):
                    # The HPA tells us nothing yet; use what was captured before.
                    total_replicas += stack.prescaling_replicas
                    total_traffic += stack.prescaling_desired_traffic_weight
                elif (
                    stack.deployment_replicas > stack.prescaling_replicas
                    and stack.actual_traffic_weight > 0
                ):
                    total_replicas += stack.deployment_replicas
                    total_traffic += stack.actual_traffic_weight
            elif stack.actual_traffic_weight > 0:
                total_replicas += stack.deployment_replicas
                total_traffic += stack.actual_traffic_weight
        return total_replicas, total_traffic

    def _prescale(
        self,
        stack: StackContainerState,
        total_replicas: float,
        total_traffic: float,
        current_timestamp: datetime,
    ) -> None:
        if stack.desired_traffic_weight > stack.actual_traffic_weight:
            if (
                not stack.prescaling_active
                or stack.prescaling_desired_traffic_weight < stack.desired_traffic_weight
            ):
                stack.prescaling_desired_traffic_weight = stack.desired_traffic_weight
                if total_traffic != 0:
                    stack.prescaling_replicas = math.ceil(
                        stack.desired_traffic_weight * total_replicas / total_traffic
                    )
                if stack.prescaling_replicas == 0:
                    stack.prescaling_replicas = effective_replicas(
                        stack.stack.spec.stack_spec.replicas
                    )
                stack.prescaling_replicas = min(stack.prescaling_replicas, stack.max_replicas())

            stack.prescaling_active = True
            stack.prescaling_last_traffic_increase = current_timestamp

        last_increase = stack.prescaling_last_traffic_increase
        if (
            stack.prescaling_active
            and last_increase is not None
            and _elapsed_since(last_increase) > self.reset_hpa_min_replicas_timeout
        ):
            stack.prescaling_active = False
            stack.prescaling_replicas = 0
            stack.prescaling_desired_traffic_weight = 0.0
            stack.prescaling_last_traffic_increase = None

    @staticmethod
    def _ready_for_more_traffic(stack: StackContainerState) -> bool:
        desired_replicas = (
            stack.prescaling_replicas if stack.prescaling_active else stack.deployment_replicas
        )
        return (
            stack.is_ready()
            and stack.updated_replicas >= desired_replicas
            and stack.ready_replicas >= desired_replicas
        )

    def reconcile(
        self, stacks: dict[str, StackContainerState], current_timestamp: datetime
    ) -> None:
        total_replicas, total_traffic = self._replicas_per_traffic(stacks.values())

        for stack in stacks.values():
            self._prescale(stack, total_replicas, total_traffic, current_timestamp)

        not_ready = []
        weights: dict[str, float] = {}
        for name, stack in stacks.items():
            if stack.desired_traffic_weight > stack.actual_traffic_weight and not (
                self._ready_for_more_traffic(stack)
            ):
                not_ready.append(name)
                continue
            weights[name] = stack.desired_traffic_weight

        if not_ready:
            raise StacksNotReadyError(not_ready)

        _apply_weights(stacks, weights)