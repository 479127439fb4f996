from __future__ import annotations

from typing import Iterable, Sequence


# Baselines with MAD at or below this are unusable.
EPSILON = 1e-9

# Scales MAD to be consistent with a standard deviation under normality.
MAD_SCALE = 0.6745


def median(values: Iterable[float]) -> float:
    """Median of values; 0.0 for an empty input so callers stay branch-free."""
    ordered = sorted(float(v) for v in values)
    n = len(ordered)
    if n == 0:
        return 0.0
    mid = n // 2
    if n % 2 == 1:
        return ordered[mid]
    return (ordered[mid - 1] + ordered[mid]) / 2.0


def mad(values: Iterable[float], center: float) -> float:
    """Median absolute deviation of values around `center`."""
    return median(abs(float(v) - center) for v in values)


def robust_z(value: float, center: float, spread: float) -> float:
    """Robust Z-score of `value` against a (median, MAD) baseline.

    Callers must check `is_usable_spread(spread)` first; a near-zero MAD marks
    the baseline unusable rather than producing an infinite score.
    """
    return MAD_SCALE * (float(value) - center) / spread


def is_usable_spread(spread: float) -> bool:
    return spread > EPSILON


def median_and_mad(values: Sequence[float]) -> tuple[float, float]:
    m = median(values)
    return m, mad(values, m)
