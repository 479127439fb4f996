from __future__ import annotations

import pytest

from factories import NOW, baseline_from_medians
from spikewatch.core.buckets import bucket_count, compute_global_baseline
from spikewatch.core.models import GlobalRankSample, Sample


def ranked(rank: int, listeners: float) -> GlobalRankSample:
    return GlobalRankSample(rank=rank, listener_count=listeners)


def current(listeners: int, rank=None) -> Sample:  # type: ignore[no-untyped-def]
    return Sample(feed_id="f", timestamp_utc=NOW, listener_count=listeners, rank=rank)


def test_ranks_partition_into_fixed_buckets() -> None:
    base = {0: 900.0, 1: 500.0, 2: 200.0, 3: 50.0, 4: 10.0}
    samples = [
        ranked(r, base[(r - 1) // 5] + k)
        for r in range(1, 26)
        for k in (-2, 0, 2)
    ]
    gb = compute_global_baseline(samples, bucket_size=5)
    assert sorted(gb.buckets) == [0, 1, 2, 3, 4]
    assert gb.num_buckets == 5
    for bucket, expected in base.items():
        stats = gb.buckets[bucket]
        assert stats.median == expected
        assert stats.mad == 2.0
        assert stats.sample_count == 15


def test_out_of_range_ranks_are_ignored() -> None:
    gb = compute_global_baseline(
        [ranked(0, 1.0), ranked(-3, 1.0), ranked(26, 1.0), ranked(7, 40.0)], bucket_size=5
    )
    assert list(gb.buckets) == [1]
    assert gb.buckets[1].sample_count == 1


def test_non_positive_bucket_size_rejected() -> None:
    with pytest.raises(ValueError):
        compute_global_baseline([], bucket_size=0)


def test_bucket_for_rank_clamps() -> None:
    gb = compute_global_baseline([], bucket_size=5)
    assert gb.bucket_for_rank(1) == 0
    assert gb.bucket_for_rank(5) == 0
    assert gb.bucket_for_rank(6) == 1
    assert gb.bucket_for_rank(25) == 4
    assert gb.bucket_for_rank(40) == 4


def test_uneven_bucket_size() -> None:
    assert bucket_count(7) == 4
    gb = compute_global_baseline([], bucket_size=7)
    assert gb.bucket_for_rank(25) == 3


def test_infer_bucket_nearest_median() -> None:
    gb = baseline_from_medians(
        [(i, m, 3.0, 500) for i, m in enumerate([10.0, 50.0, 200.0, 500.0, 900.0])], bucket_size=5
    )
    assert gb.infer_bucket(480) == 3
    assert gb.infer_bucket(0) == 0
    assert gb.infer_bucket(5000) == 4


def test_infer_bucket_tie_goes_to_lowest_index() -> None:
    gb = baseline_from_medians([(2, 30.0, 1.0, 10), (1, 10.0, 1.0, 10)], bucket_size=5)
    assert gb.infer_bucket(20) == 1


def test_select_uses_rank_or_infers() -> None:
    gb = baseline_from_medians([(0, 900.0, 5.0, 400), (4, 10.0, 2.0, 400)], bucket_size=5)
    ranked_sel = gb.select(current(15, rank=2))
    assert ranked_sel is not None and ranked_sel.bucket == 0 and not ranked_sel.inferred

    inferred = gb.select(current(15))
    assert inferred is not None and inferred.bucket == 4 and inferred.inferred

    # Non-positive rank counts as unranked.
    assert gb.select(current(15, rank=0)).inferred  # type: ignore[union-attr]


def test_select_without_any_buckets() -> None:
    gb = compute_global_baseline([], bucket_size=5)
    assert gb.select(current(100)) is None


def test_usable_requires_count_and_spread() -> None:
    gb = baseline_from_medians(
        [(0, 100.0, 5.0, 300), (1, 100.0, 5.0, 299), (2, 100.0, 0.0, 1000)], bucket_size=5
    )
    assert gb.usable(0, 300) is not None
    assert gb.usable(1, 300) is None
    assert gb.usable(2, 300) is None
    assert gb.usable(3, 300) is None


def test_snapshot_is_read_only() -> None:
    gb = compute_global_baseline([ranked(1, 10.0)], bucket_size=5)
    with pytest.raises(TypeError):
        gb.buckets[9] = gb.buckets[0]  # type: ignore[index]
