from __future__ import annotations

import bisect
import threading
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from ..core.models import MAX_RANK, Feed, GlobalRankSample, Sample, SpikeState


class InMemoryStore:
    """Thread-safe sample source and state store held in process memory.

    Samples are kept per feed, sorted by timestamp, so out-of-order inserts
    still come back ascending.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._feeds: Dict[str, Feed] = {}
        self._samples: Dict[str, List[Sample]] = defaultdict(list)
        self._states: Dict[str, SpikeState] = {}

    # ───────────────────────────── ingestion ─────────────────────────────
    def upsert_feed(self, feed: Feed) -> None:
        with self._lock:
            self._feeds[feed.feed_id] = feed

    def add_sample(self, sample: Sample) -> None:
        with self._lock:
            if sample.feed_id not in self._feeds:
                self._feeds[sample.feed_id] = Feed(feed_id=sample.feed_id)
            series = self._samples[sample.feed_id]
            if not series or sample.timestamp_utc >= series[-1].timestamp_utc:
                series.append(sample)
                return
            keys = [s.timestamp_utc for s in series]
            series.insert(bisect.bisect_right(keys, sample.timestamp_utc), sample)

    def add_samples(self, samples: Iterable[Sample]) -> None:
        for s in samples:
            self.add_sample(s)

    # ───────────────────────────── SampleSource ─────────────────────────────
    def list_feeds(self) -> List[Feed]:
        with self._lock:
            return list(self._feeds.values())

    def list_samples(self, feed_id: str, since_utc: datetime) -> List[Sample]:
        with self._lock:
            return [s for s in self._samples.get(feed_id, []) if s.timestamp_utc >= since_utc]

    def list_samples_between(self, feed_id: str, since_utc: datetime, until_utc: datetime) -> List[Sample]:
        with self._lock:
            return [
                s for s in self._samples.get(feed_id, [])
                if since_utc <= s.timestamp_utc <= until_utc
            ]

    def list_global_rank_samples(self, since_utc: datetime) -> List[GlobalRankSample]:
        return self.list_global_rank_samples_between(since_utc, None)

    def list_global_rank_samples_between(
        self, since_utc: datetime, until_utc: Optional[datetime]
    ) -> List[GlobalRankSample]:
        with self._lock:
            return [
                GlobalRankSample(rank=s.rank, listener_count=s.listener_count)  # type: ignore[arg-type]
                for series in self._samples.values()
                for s in series
                if s.timestamp_utc >= since_utc
                and (until_utc is None or s.timestamp_utc <= until_utc)
                and s.rank is not None
                and 1 <= s.rank <= MAX_RANK
            ]

    def time_span(self) -> Optional[Tuple[datetime, datetime]]:
        with self._lock:
            stamps = [s.timestamp_utc for series in self._samples.values() for s in series]
        if not stamps:
            return None
        return min(stamps), max(stamps)

    # ───────────────────────────── StateStore ─────────────────────────────
    def get_spike_state(self, feed_id: str) -> SpikeState:
        with self._lock:
            return self._states.get(feed_id) or SpikeState.inactive(feed_id)

    def set_spike_state(self, state: SpikeState) -> None:
        with self._lock:
            self._states[state.feed_id] = state
