from __future__ import annotations

from datetime import timedelta

import pytest

from factories import CALM, NOW, STEP, make_config, make_series
from spikewatch.config import DetectConfig
from spikewatch.core.models import Feed
from spikewatch.data.memory import InMemoryStore
from spikewatch.data.replay import ReplayParams, ReplayRunner, _AsOfSource


def test_replay_finds_one_spike_and_its_end() -> None:
    counts = CALM + [500, 520, 510, 100, 100, 100]
    samples = make_series(counts)
    store = InMemoryStore()
    store.upsert_feed(Feed(feed_id="f1", name="County Fire"))
    store.add_samples(samples)

    # High floor keeps the hard-threshold tier quiet while history is short.
    cfg = make_config(detect=DetectConfig(new_feed_min_listeners=1000))
    t = [s.timestamp_utc for s in samples]
    result = ReplayRunner(cfg, store).run(ReplayParams(start_utc=t[41], end_utc=t[47], step=STEP))

    assert result.cycles == 7
    assert result.starts == [(t[44], "f1")]
    assert result.ends == [(t[45], "f1")]
    assert len(result.events) == 1
    assert result.events[0].median == 100.0
    assert result.failed_cycles == 0
    assert t[47] == NOW


def test_replay_rejects_non_positive_step() -> None:
    with pytest.raises(ValueError):
        ReplayRunner(make_config(), InMemoryStore()).run(
            ReplayParams(start_utc=NOW, end_utc=NOW, step=timedelta(0))
        )


def test_as_of_view_requires_clock() -> None:
    view = _AsOfSource(InMemoryStore())
    with pytest.raises(RuntimeError):
        view.list_samples("f1", NOW - timedelta(days=1))
    view.now = NOW
    assert view.list_global_rank_samples(NOW - timedelta(days=1)) == []
