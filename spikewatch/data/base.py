from __future__ import annotations

from datetime import datetime
from typing import List, Protocol

from ..core.models import Feed, GlobalRankSample, Sample, SpikeEvent, SpikeState


class SampleSource(Protocol):
    def list_feeds(self) -> List[Feed]: ...

    def list_samples(self, feed_id: str, since_utc: datetime) -> List[Sample]:
        """Samples for one feed at or after `since_utc`, ascending by time."""
        ...

    def list_global_rank_samples(self, since_utc: datetime) -> List[GlobalRankSample]: ...


class StateStore(Protocol):
    def get_spike_state(self, feed_id: str) -> SpikeState:
        """Stored state, or an Inactive state if the feed has none yet."""
        ...

    def set_spike_state(self, state: SpikeState) -> None: ...


class EventSink(Protocol):
    def publish(self, event: SpikeEvent) -> None: ...
