"""Tiered spike/recovery decision.

Three baselines are tried in order, and the first usable one decides:

1. the feed's own history (per-feed robust baseline with a persistence window),
2. the global rank-bucket cohort the feed belongs to (or is inferred to),
3. an absolute listener floor, which always decides.

Each tier is a function returning either a decision variant or a `Fallback`
naming why it could not decide. `evaluate_feed` is the single entry point used
by both the live detector and the inspection path.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, ClassVar, Dict, List, Optional, Sequence, Tuple, Union

from ..config import DetectConfig
from .baseline import FeedBaselineEstimate, estimate_feed_baseline
from .buckets import GlobalBaseline
from .models import Sample
from .robust import is_usable_spread, robust_z


@dataclass(frozen=True)
class PerFeedDecision:
    tier: ClassVar[str] = "per_feed"

    median: float
    mad: float
    current_z: float
    recent_z: Tuple[float, ...]
    is_spike_now: bool
    is_recovered: bool


@dataclass(frozen=True)
class GlobalBucketDecision:
    tier: ClassVar[str] = "global_bucket"

    bucket: int
    bucket_inferred: bool
    median: float
    mad: float
    current_z: float
    is_spike_now: bool
    is_recovered: bool


@dataclass(frozen=True)
class HardThresholdDecision:
    tier: ClassVar[str] = "hard_threshold"

    listener_count: int
    floor: int
    is_spike_now: bool
    is_recovered: bool
    bucket: Optional[int] = None
    bucket_inferred: bool = False
    median: float = 0.0
    mad: float = 0.0
    current_z: float = 0.0


Decision = Union[PerFeedDecision, GlobalBucketDecision, HardThresholdDecision]


@dataclass(frozen=True)
class Fallback:
    reason: str


TierResult = Union[Decision, Fallback]


@dataclass(frozen=True)
class TierInput:
    current: Sample
    estimate: FeedBaselineEstimate
    global_baseline: GlobalBaseline
    config: DetectConfig


def per_feed_tier(inp: TierInput) -> TierResult:
    est = inp.estimate
    if est.baseline is None:
        return Fallback(est.reason or "per_feed_unusable")
    cfg = inp.config
    return PerFeedDecision(
        median=est.baseline.median,
        mad=est.baseline.mad,
        current_z=est.current_z,
        recent_z=est.recent_z,
        # Every sample of the persist window must clear the threshold.
        is_spike_now=bool(est.recent_z) and all(z >= cfg.robust_z_threshold for z in est.recent_z),
        is_recovered=est.current_z <= cfg.recovery_z_threshold,
    )


def global_bucket_tier(inp: TierInput) -> TierResult:
    selection = inp.global_baseline.select(inp.current)
    if selection is None:
        return Fallback("no_bucket")
    cfg = inp.config
    stats = inp.global_baseline.usable(selection.bucket, cfg.global_min_samples)
    if stats is None:
        return Fallback("bucket_unusable")
    listeners = inp.current.listener_count
    z = robust_z(listeners, stats.median, stats.mad)
    return GlobalBucketDecision(
        bucket=selection.bucket,
        bucket_inferred=selection.inferred,
        median=stats.median,
        mad=stats.mad,
        current_z=z,
        is_spike_now=z >= cfg.global_robust_z_threshold and listeners >= cfg.new_feed_min_listeners,
        is_recovered=z <= cfg.recovery_z_threshold,
    )


def hard_threshold_tier(inp: TierInput) -> TierResult:
    listeners = inp.current.listener_count
    floor = inp.config.new_feed_min_listeners
    selection = inp.global_baseline.select(inp.current)
    return HardThresholdDecision(
        listener_count=listeners,
        floor=floor,
        is_spike_now=listeners >= floor,
        is_recovered=listeners < floor,
        bucket=selection.bucket if selection else None,
        bucket_inferred=selection.inferred if selection else False,
    )


TIERS: Tuple[Callable[[TierInput], TierResult], ...] = (
    per_feed_tier,
    global_bucket_tier,
    hard_threshold_tier,
)


def decide(inp: TierInput) -> Tuple[Decision, Tuple[str, ...]]:
    """Run the tiers in priority order; return the decision and skipped-tier reasons."""
    reasons: List[str] = []
    for tier in TIERS:
        result = tier(inp)
        if isinstance(result, Fallback):
            reasons.append(result.reason)
            continue
        return result, tuple(reasons)
    # The hard threshold tier never falls back.
    raise AssertionError("no tier produced a decision")


@dataclass(frozen=True)
class DecisionTrace:
    """Everything that went into one feed's decision for one cycle."""

    feed_id: str
    evaluated_at: datetime
    sample_count: int
    current: Optional[Sample]
    decision: Optional[Decision]
    fallback_reasons: Tuple[str, ...] = ()
    sample_z: Tuple[float, ...] = ()
    transition: Optional[str] = None

    @property
    def tier(self) -> Optional[str]:
        return self.decision.tier if self.decision is not None else None

    @property
    def is_spike_now(self) -> bool:
        return bool(self.decision and self.decision.is_spike_now)

    @property
    def is_recovered(self) -> bool:
        return bool(self.decision and self.decision.is_recovered)

    @property
    def median(self) -> float:
        return self.decision.median if self.decision is not None else 0.0

    @property
    def mad(self) -> float:
        return self.decision.mad if self.decision is not None else 0.0

    @property
    def current_z(self) -> float:
        return self.decision.current_z if self.decision is not None else 0.0

    def to_dict(self) -> Dict[str, Any]:
        d = self.decision
        return {
            "feedId": self.feed_id,
            "evaluatedAtUtc": self.evaluated_at.isoformat(),
            "sampleCount": self.sample_count,
            "current": None
            if self.current is None
            else {
                "timestampUtc": self.current.timestamp_utc.isoformat(),
                "listenerCount": self.current.listener_count,
                "rank": self.current.rank,
            },
            "tier": self.tier,
            "median": self.median,
            "mad": self.mad,
            "currentZ": self.current_z,
            "recentZ": list(d.recent_z) if isinstance(d, PerFeedDecision) else [],
            "bucket": getattr(d, "bucket", None),
            "bucketInferred": getattr(d, "bucket_inferred", False),
            "sampleZ": list(self.sample_z),
            "isSpikeNow": self.is_spike_now,
            "isRecovered": self.is_recovered,
            "fallbackReasons": list(self.fallback_reasons),
            "transition": self.transition,
        }


def evaluate_feed(
    feed_id: str,
    samples: Sequence[Sample],
    global_baseline: GlobalBaseline,
    config: DetectConfig,
    now: datetime,
) -> DecisionTrace:
    """Decide whether a feed is spiking or recovered right now.

    `samples` are the feed's samples within the lookback window, ascending.
    A feed without samples gets a trace with no decision.
    """
    estimate = estimate_feed_baseline(
        samples,
        min_samples=config.min_samples,
        persist_samples=config.persist_samples,
        max_sample_age=config.max_sample_age,
        now=now,
    )
    if not samples:
        return DecisionTrace(
            feed_id=feed_id,
            evaluated_at=now,
            sample_count=0,
            current=None,
            decision=None,
            fallback_reasons=(estimate.reason or "no_samples",),
        )

    current = samples[-1]
    decision, reasons = decide(
        TierInput(current=current, estimate=estimate, global_baseline=global_baseline, config=config)
    )
    sample_z: Tuple[float, ...] = ()
    if is_usable_spread(decision.mad):
        sample_z = tuple(robust_z(s.listener_count, decision.median, decision.mad) for s in samples)
    return DecisionTrace(
        feed_id=feed_id,
        evaluated_at=now,
        sample_count=len(samples),
        current=current,
        decision=decision,
        fallback_reasons=reasons,
        sample_z=sample_z,
    )
