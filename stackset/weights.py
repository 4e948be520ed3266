"""Normalisation and rounding of traffic weights."""

from __future__ import annotations

import math


def all_zero(weights: dict[str, float]) -> bool:
    """Return True if no weight in the map is positive."""
    return not any(weight > 0 for weight in weights.values())


def normalize_min_ready_percent(min_ready_percent: int) -> float:
    """Turn a percentage into a fraction; values outside (0, 100) become 1.0."""
    if min_ready_percent >= 100 or min_ready_percent <= 0:
        return 1.0
    return min_ready_percent / 100


def normalize_weights(weights: dict[str, float]) -> None:
    """Normalise weights in place to a sum of 100.

    If all weights are zero, 100 is shared equally between all backends.
    """
    if all_zero(weights) and weights:
        equal = 100 / len(weights)
        for backend in weights:
            weights[backend] = equal
        return

    total = sum(weights.values())
    for backend, weight in weights.items():
        weights[backend] = weight / total * 100


def round_weights(weights: dict[str, float]) -> None:
    """Round weights in place to whole numbers that still add up to 100.

    Uses the largest remainder method; ties go to the larger integer part and
    then to the lexicographically smaller name. Weights must already sum to 100.
    """
    original = dict(weights)
    for backend, weight in original.items():
        weights[backend] = math.floor(weight)
    remaining = 100 - int(sum(weights.values()))
    if remaining < 0 or remaining > len(original):
        raise ValueError("weights must be normalized to a sum of 100")

    def _order(item: tuple[str, float]) -> tuple[float, float, str]:
        backend, weight = item
        fraction, integer = math.modf(weight)
        return (-fraction, -integer, backend)

    for backend, _ in sorted(original.items(), key=_order)[:remaining]:
        weights[backend] += 1