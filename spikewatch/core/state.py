from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .decision import DecisionTrace
from .models import Feed, SpikeEvent, SpikeState


ACTIVATED = "activated"
RECOVERED = "recovered"
UNCHANGED = "unchanged"


@dataclass(frozen=True)
class Transition:
    kind: str
    state: SpikeState
    event: Optional[SpikeEvent] = None


def advance(
    state: SpikeState,
    trace: DecisionTrace,
    feed: Feed,
    now: datetime,
    recovery_takes_precedence: bool = False,
) -> Transition:
    """Apply one cycle's decision to a feed's spike state.

    Inactive -> Active on a spike (with an event); Active -> Inactive on
    recovery (no event). When an Active feed reports both spike and recovery
    it stays Active unless `recovery_takes_precedence` is set.
    """
    current = trace.current
    if trace.decision is None or current is None:
        return Transition(kind=UNCHANGED, state=state)

    if not state.is_active:
        if trace.is_spike_now:
            event = SpikeEvent(
                feed_id=feed.feed_id,
                name=feed.name,
                url=feed.url,
                timestamp_utc=current.timestamp_utc,
                listener_count=current.listener_count,
                median=trace.median,
                mad=trace.mad,
                robust_z=trace.current_z,
                tier=trace.tier or "",
            )
            return Transition(kind=ACTIVATED, state=SpikeState.active(state.feed_id, now), event=event)
        return Transition(kind=UNCHANGED, state=state)

    if trace.is_recovered and (recovery_takes_precedence or not trace.is_spike_now):
        return Transition(kind=RECOVERED, state=SpikeState.inactive(state.feed_id))
    return Transition(kind=UNCHANGED, state=state)
