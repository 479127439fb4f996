from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Iterable, Optional, Sequence

from ..config import DetectConfig
from .buckets import compute_global_baseline
from .decision import DecisionTrace, evaluate_feed
from .models import Feed, GlobalRankSample, Sample, SpikeState
from .state import advance


def inspect(
    feed_id: str,
    samples: Sequence[Sample],
    global_rank_samples: Iterable[GlobalRankSample],
    config: DetectConfig,
    now: datetime,
    state: Optional[SpikeState] = None,
) -> DecisionTrace:
    """Rerun the live decision for one feed without touching any store.

    Uses the same `evaluate_feed` and `advance` as the detector; the returned
    trace names the transition the feed would take from `state`.
    """
    global_baseline = compute_global_baseline(global_rank_samples, config.bucket_size)
    trace = evaluate_feed(feed_id, samples, global_baseline, config, now)
    transition = advance(
        state or SpikeState.inactive(feed_id),
        trace,
        Feed(feed_id=feed_id),
        now,
        recovery_takes_precedence=config.recovery_takes_precedence,
    )
    return replace(trace, transition=transition.kind)
