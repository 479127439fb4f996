from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence, Tuple

from .models import Baseline, Sample
from .robust import is_usable_spread, median_and_mad, robust_z


# Reasons a feed has no usable per-feed baseline. Not errors: they select the
# next tier.
NO_SAMPLES = "no_samples"
STALE = "stale"
INSUFFICIENT_SAMPLES = "insufficient_samples"
INSUFFICIENT_BASELINE = "insufficient_baseline"
ZERO_SPREAD = "zero_spread"


@dataclass(frozen=True)
class FeedBaselineEstimate:
    """Outcome of estimating a feed's own baseline.

    When `baseline` is None, `reason` names the precondition that failed and
    the Z-score fields are empty.
    """

    baseline: Optional[Baseline]
    recent_z: Tuple[float, ...] = ()
    current_z: float = 0.0
    reason: Optional[str] = None

    @property
    def usable(self) -> bool:
        return self.baseline is not None

    @classmethod
    def unusable(cls, reason: str) -> "FeedBaselineEstimate":
        return cls(baseline=None, reason=reason)


def estimate_feed_baseline(
    samples: Sequence[Sample],
    *,
    min_samples: int,
    persist_samples: int,
    max_sample_age: timedelta,
    now: datetime,
) -> FeedBaselineEstimate:
    """Split samples into baseline prefix and persist suffix and score the suffix.

    `samples` must be ascending by timestamp. The newest `persist_samples`
    samples are excluded from the baseline and scored against it.
    """
    count = len(samples)
    if count == 0:
        return FeedBaselineEstimate.unusable(NO_SAMPLES)

    current = samples[-1]
    if now - current.timestamp_utc > max_sample_age:
        return FeedBaselineEstimate.unusable(STALE)

    if count < min_samples or count < persist_samples + 2:
        return FeedBaselineEstimate.unusable(INSUFFICIENT_SAMPLES)

    prefix = [float(s.listener_count) for s in samples[: count - persist_samples]]
    if len(prefix) < min_samples:
        return FeedBaselineEstimate.unusable(INSUFFICIENT_BASELINE)

    center, spread = median_and_mad(prefix)
    if not is_usable_spread(spread):
        return FeedBaselineEstimate.unusable(ZERO_SPREAD)

    recent = samples[count - persist_samples:]
    return FeedBaselineEstimate(
        baseline=Baseline(median=center, mad=spread, sample_count=len(prefix)),
        recent_z=tuple(robust_z(s.listener_count, center, spread) for s in recent),
        current_z=robust_z(current.listener_count, center, spread),
    )
