from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional

from .models import MAX_RANK, Baseline, GlobalRankSample, Sample
from .robust import is_usable_spread, median_and_mad


def bucket_count(bucket_size: int) -> int:
    return math.ceil(MAX_RANK / bucket_size)


@dataclass(frozen=True)
class BucketSelection:
    bucket: int
    inferred: bool


@dataclass(frozen=True)
class GlobalBaseline:
    """Per-rank-bucket baselines computed once per cycle.

    Buckets group ranks into fixed-width cohorts: with `bucket_size=5`,
    bucket 0 holds ranks 1-5, bucket 1 ranks 6-10 and so on. The mapping is
    read-only so every feed in a cycle is judged against the same snapshot.
    """

    bucket_size: int
    buckets: Mapping[int, Baseline] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def num_buckets(self) -> int:
        return bucket_count(self.bucket_size)

    def bucket_for_rank(self, rank: int) -> int:
        rank = min(max(rank, 1), MAX_RANK)
        bucket = (rank - 1) // self.bucket_size
        return min(max(bucket, 0), self.num_buckets - 1)

    def infer_bucket(self, listener_count: float) -> Optional[int]:
        """Bucket whose median is closest to `listener_count`.

        Ties go to the lowest bucket index. None when no bucket has samples.
        """
        best: Optional[int] = None
        best_distance = math.inf
        for bucket in sorted(self.buckets):
            stats = self.buckets[bucket]
            if stats.sample_count == 0:
                continue
            distance = abs(listener_count - stats.median)
            if distance < best_distance:
                best_distance = distance
                best = bucket
        return best

    def select(self, sample: Sample) -> Optional[BucketSelection]:
        if sample.has_rank:
            return BucketSelection(bucket=self.bucket_for_rank(sample.rank), inferred=False)  # type: ignore[arg-type]
        inferred = self.infer_bucket(sample.listener_count)
        if inferred is None:
            return None
        return BucketSelection(bucket=inferred, inferred=True)

    def usable(self, bucket: int, min_samples: int) -> Optional[Baseline]:
        """Return the bucket's baseline if it is fit for decisioning."""
        stats = self.buckets.get(bucket)
        if stats is None:
            return None
        if stats.sample_count < min_samples or not is_usable_spread(stats.mad):
            return None
        return stats

    def medians(self) -> Dict[int, float]:
        return {b: s.median for b, s in sorted(self.buckets.items())}


def compute_global_baseline(
    samples: Iterable[GlobalRankSample], bucket_size: int
) -> GlobalBaseline:
    """Group ranked samples into buckets and compute a robust baseline per bucket.

    Samples with a rank outside 1..25 are ignored.
    """
    if bucket_size <= 0:
        raise ValueError(f"bucket_size must be positive, got {bucket_size}")

    by_bucket: Dict[int, List[float]] = defaultdict(list)
    for s in samples:
        if s.rank is None or s.rank < 1 or s.rank > MAX_RANK:
            continue
        by_bucket[(s.rank - 1) // bucket_size].append(float(s.listener_count))

    stats: Dict[int, Baseline] = {}
    for bucket, values in by_bucket.items():
        center, spread = median_and_mad(values)
        stats[bucket] = Baseline(median=center, mad=spread, sample_count=len(values))
    return GlobalBaseline(bucket_size=bucket_size, buckets=MappingProxyType(stats))
