"""Manual traffic switching between the stacks of a stackset."""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from typing import Any, Protocol

STACKSET_HERITAGE_LABEL_KEY = "stackset"
STACK_TRAFFIC_WEIGHTS_ANNOTATION_KEY = "zalando.org/stack-traffic-weights"
DEFAULT_BACKEND_WEIGHTS_ANNOTATION_KEY = "zalando.org/backend-weights"


class SwitchError(Exception):
    """Raised when traffic weights cannot be read or changed."""


@dataclass
class StackTrafficWeight:
    name: str
    weight: float = 0.0
    actual_weight: float = 0.0


class TrafficClient(Protocol):
    """Access to the cluster objects the switcher reads and patches."""

    def list_stack_names(self, namespace: str, label_selector: str) -> list[str]:
        """Return the names of the stacks matching the label selector."""
        ...

    def get_ingress_annotations(self, namespace: str, name: str) -> dict[str, str]:
        """Return the annotations of the named ingress."""
        ...

    def patch_ingress(self, namespace: str, name: str, patch: dict[str, Any]) -> None:
        """Apply a strategic merge patch to the named ingress."""
        ...


def _dump_weights(weights: dict[str, float]) -> str:
    compact = {
        name: int(value) if float(value).is_integer() else value
        for name, value in weights.items()
    }
    return json.dumps(compact, sort_keys=True, separators=(",", ":"))


def _parse_weights(data: str, kind: str) -> dict[str, float]:
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError as err:
        raise SwitchError(f"failed to get current {kind} Stack traffic weights: {err}") from err
    if not isinstance(parsed, dict) or not all(
        isinstance(value, (int, float)) and not isinstance(value, bool)
        for value in parsed.values()
    ):
        raise SwitchError(
            f"failed to get current {kind} Stack traffic weights: expected an object of numbers"
        )
    return {name: float(value) for name, value in parsed.items()}


class Switcher:
    """Reads and changes the traffic weights of a stackset's stacks."""

    def __init__(
        self,
        client: TrafficClient,
        backend_weights_annotation_key: str = DEFAULT_BACKEND_WEIGHTS_ANNOTATION_KEY,
    ) -> None:
        self.client = client
        self.backend_weights_annotation_key = backend_weights_annotation_key

    def switch(
        self, stackset: str, stack: str, namespace: str, weight: float
    ) -> list[StackTrafficWeight]:
        """Set the traffic weight of one stack, scaling the others to keep 100."""
        stacks = self._get_stacks(stackset, namespace)
        new_weights = set_weight_for_stacks(normalize_stack_weights(stacks), stack, weight)

        change_needed = any(new.weight != old.weight for new, old in zip(new_weights, stacks))
        if change_needed:
            stack_weights = {entry.name: entry.weight for entry in new_weights}
            patch = {
                "metadata": {
                    "annotations": {
                        STACK_TRAFFIC_WEIGHTS_ANNOTATION_KEY: _dump_weights(stack_weights)
                    }
                }
            }
            self.client.patch_ingress(namespace, stackset, patch)
        return new_weights

    def traffic_weights(self, stackset: str, namespace: str) -> list[StackTrafficWeight]:
        """Return the stacks of the stackset with their normalised weights."""
        return normalize_stack_weights(self._get_stacks(stackset, namespace))

    def _get_stacks(self, stackset: str, namespace: str) -> list[StackTrafficWeight]:
        selector = f"{STACKSET_HERITAGE_LABEL_KEY}={stackset}"
        try:
            names = self.client.list_stack_names(namespace, selector)
        except Exception as err:
            raise SwitchError(
                f"failed to list stacks of stackset {namespace}/{stackset}: {err}"
            ) from err

        try:
            desired, actual = self._get_ingress_traffic(stackset, namespace, names)
        except Exception as err:
            raise SwitchError(
                f"failed to get Ingress traffic for StackSet {namespace}/{stackset}: {err}"
            ) from err

        return [
            StackTrafficWeight(
                name=name,
                weight=desired.get(name, 0.0),
                actual_weight=actual.get(name, 0.0),
            )
            for name in names
        ]

    def _get_ingress_traffic(
        self, name: str, namespace: str, stacks: list[str]
    ) -> tuple[dict[str, float], dict[str, float]]:
        if not stacks:
            return {}, {}
        annotations = self.client.get_ingress_annotations(namespace, name)
        desired: dict[str, float] = {}
        if STACK_TRAFFIC_WEIGHTS_ANNOTATION_KEY in annotations:
            desired = _parse_weights(annotations[STACK_TRAFFIC_WEIGHTS_ANNOTATION_KEY], "desired")
        actual: dict[str, float] = {}
        if self.backend_weights_annotation_key in annotations:
            actual = _parse_weights(annotations[self.backend_weights_annotation_key], "actual")
        return desired, actual


def set_weight_for_stacks(
    stacks: list[StackTrafficWeight], stack_name: str, weight: float
) -> list[StackTrafficWeight]:
    """Give one stack a new weight and scale the others relatively.

    The weights of all stacks are assumed to sum to 100.
    """
    current = next((entry.weight for entry in stacks if entry.name == stack_name), 0.0)

    change = 0.0
    if current < 100:
        change = (100 - weight) / (100 - current)
    elif weight < 100:
        raise SwitchError(
            f"'{stack_name}' is the only Stack getting traffic, Can't reduce it to {weight:.1f}%"
        )

    return [
        replace(entry, weight=weight)
        if entry.name == stack_name
        else replace(entry, weight=entry.weight * change)
        for entry in stacks
    ]


def normalize_stack_weights(stacks: list[StackTrafficWeight]) -> list[StackTrafficWeight]:
    """Return copies of the stacks with weights normalised to a sum of 100.

    If all weights are zero, 100 is shared equally between all stacks.
    """
    if stacks and not any(entry.weight > 0 for entry in stacks):
        equal = 100 / len(stacks)
        return [replace(entry, weight=equal) for entry in stacks]

    total = sum(entry.weight for entry in stacks)
    return [replace(entry, weight=entry.weight / total * 100) for entry in stacks]