from __future__ import annotations

from datetime import timedelta

import pytest

from factories import CALM, NOW, STEP, make_series
from spikewatch.config import DetectConfig
from spikewatch.core.buckets import compute_global_baseline
from spikewatch.core.decision import DecisionTrace, HardThresholdDecision, evaluate_feed
from spikewatch.core.models import Feed, SpikeState
from spikewatch.core.state import ACTIVATED, RECOVERED, UNCHANGED, advance


CFG = DetectConfig()
EMPTY = compute_global_baseline([], bucket_size=5)
FEED = Feed(feed_id="f1", name="County Fire", url="https://example.test/listen/feed/1")


def both_flags_trace() -> DecisionTrace:
    sample = make_series([100])[0]
    decision = HardThresholdDecision(listener_count=100, floor=80, is_spike_now=True, is_recovered=True)
    return DecisionTrace(feed_id="f1", evaluated_at=NOW, sample_count=1, current=sample, decision=decision)


def test_state_invariant() -> None:
    with pytest.raises(ValueError):
        SpikeState(feed_id="f1", is_active=True)
    with pytest.raises(ValueError):
        SpikeState(feed_id="f1", is_active=False, activated_at_utc=NOW)


def test_inactive_to_active_emits_event() -> None:
    trace = evaluate_feed("f1", make_series(CALM + [500, 520, 510]), EMPTY, CFG, NOW)
    t = advance(SpikeState.inactive("f1"), trace, FEED, NOW)
    assert t.kind == ACTIVATED
    assert t.state == SpikeState.active("f1", NOW)
    assert t.event is not None
    assert t.event.feed_id == "f1"
    assert t.event.name == "County Fire"
    assert t.event.listener_count == 510
    assert t.event.median == 100.0
    assert t.event.mad == 5.0
    assert t.event.robust_z == pytest.approx(0.6745 * 410 / 5)
    assert t.event.timestamp_utc == NOW
    assert t.event.tier == "per_feed"


def test_active_to_inactive_on_recovery_without_event() -> None:
    since = NOW - timedelta(minutes=5)
    trace = evaluate_feed("f1", make_series(CALM + [500, 520, 510, 105]), EMPTY, CFG, NOW)
    t = advance(SpikeState.active("f1", since), trace, FEED, NOW)
    assert t.kind == RECOVERED
    assert t.event is None
    assert t.state == SpikeState.inactive("f1")
    assert t.state.activated_at_utc is None


def test_reevaluating_active_spike_is_a_no_op() -> None:
    since = NOW - timedelta(minutes=5)
    state = SpikeState.active("f1", since)
    trace = evaluate_feed("f1", make_series(CALM + [500, 520, 510]), EMPTY, CFG, NOW)
    first = advance(state, trace, FEED, NOW)
    second = advance(first.state, trace, FEED, NOW)
    for t in (first, second):
        assert t.kind == UNCHANGED
        assert t.event is None
        assert t.state is state


def test_inactive_without_spike_stays_inactive() -> None:
    trace = evaluate_feed("f1", make_series(CALM + [100, 105, 95]), EMPTY, CFG, NOW)
    t = advance(SpikeState.inactive("f1"), trace, FEED, NOW)
    assert t.kind == UNCHANGED


def test_both_flags_on_active_feed_favours_active() -> None:
    state = SpikeState.active("f1", NOW - timedelta(hours=1))
    assert advance(state, both_flags_trace(), FEED, NOW).kind == UNCHANGED


def test_both_flags_with_recovery_precedence() -> None:
    state = SpikeState.active("f1", NOW - timedelta(hours=1))
    t = advance(state, both_flags_trace(), FEED, NOW, recovery_takes_precedence=True)
    assert t.kind == RECOVERED


def test_both_flags_on_inactive_feed_activates() -> None:
    t = advance(SpikeState.inactive("f1"), both_flags_trace(), FEED, NOW)
    assert t.kind == ACTIVATED


def test_no_decision_leaves_state_alone() -> None:
    trace = evaluate_feed("f1", [], EMPTY, CFG, NOW)
    state = SpikeState.active("f1", NOW)
    assert advance(state, trace, FEED, NOW).state is state


def test_partial_persistence_across_cycles_never_activates() -> None:
    # N-1 qualifying samples arrive one cycle at a time, then a calm one.
    history = list(CALM)
    state = SpikeState.inactive("f1")
    now = NOW
    for listeners in (500, 520, 100):
        history.append(listeners)
        now = now + STEP
        trace = evaluate_feed("f1", make_series(history, end=now), EMPTY, CFG, now)
        assert trace.tier == "per_feed"
        t = advance(state, trace, FEED, now)
        assert t.kind == UNCHANGED
        state = t.state
    assert not state.is_active
