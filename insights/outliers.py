"""
Outlier and threshold evaluation for close recommendations.

Outlier detection uses the inter-quartile range of the eligible
population. Quartiles are estimated by linear interpolation between
order statistics (the "inclusive" method, position (n - 1) * p), so
small populations are handled without special cases:

    values {10, 20, 1000}: Q1 = 15, Q3 = 510, IQR = 495

A channel is recommended for close only when it sits below
Q1 - multiplier * IQR. High-side outliers are never flagged.
"""

import math
import statistics
from typing import Iterable, List, Set, Tuple

from .channel_metrics import EligibleChannel
from .errors import InvalidArgumentError


DEFAULT_OUTLIER_MULTIPLIER = 1.5
CONSERVATIVE_OUTLIER_MULTIPLIER = 3.0


def validate_multiplier(multiplier: float) -> float:
    try:
        value = float(multiplier)
    except (TypeError, ValueError):
        raise InvalidArgumentError(f"Outlier multiplier must be a number, got {multiplier!r}")
    if not math.isfinite(value) or value <= 0:
        raise InvalidArgumentError(f"Outlier multiplier must be positive, got {multiplier!r}")
    return value


def validate_threshold(threshold: float) -> float:
    try:
        value = float(threshold)
    except (TypeError, ValueError):
        raise InvalidArgumentError(f"Threshold must be a number, got {threshold!r}")
    if not math.isfinite(value):
        raise InvalidArgumentError(f"Threshold must be finite, got {threshold!r}")
    return value


def quartiles(values: Iterable[float]) -> Tuple[float, float]:
    """
    Lower and upper quartiles by linear interpolation.

    Raises:
        ValueError: for an empty population
    """
    ordered = sorted(values)
    if not ordered:
        raise ValueError("quartiles of an empty population")
    if len(ordered) == 1:
        return ordered[0], ordered[0]

    q1, _, q3 = statistics.quantiles(ordered, n=4, method='inclusive')
    return q1, q3


def lower_bound(values: Iterable[float], multiplier: float) -> float:
    """Q1 - multiplier * IQR."""
    q1, q3 = quartiles(values)
    return q1 - multiplier * (q3 - q1)


def flag_outliers(eligible: List[EligibleChannel], multiplier: float) -> Set[str]:
    """
    Channel points whose value is strictly below the lower outlier bound.
    """
    multiplier = validate_multiplier(multiplier)
    if not eligible:
        return set()

    bound = lower_bound((c.value for c in eligible), multiplier)
    return {c.chan_point for c in eligible if c.value < bound}


def below_threshold(value: float, threshold: float) -> bool:
    """Recommend close iff the value is strictly below the threshold."""
    return value < threshold


def flag_below_threshold(eligible: List[EligibleChannel], threshold: float) -> Set[str]:
    threshold = validate_threshold(threshold)
    return {c.chan_point for c in eligible if below_threshold(c.value, threshold)}
