from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from ..config import AppConfig
from ..core.detector import CycleReport, SpikeDetector
from ..core.models import Feed, GlobalRankSample, Sample, SpikeEvent
from .events import MemoryEventSink
from .memory import InMemoryStore


@dataclass
class ReplayParams:
    """Parameters for a replay run.

    Replay steps a simulated clock from `start_utc` to `end_utc` and runs one
    detector cycle per step against only the samples visible at that moment,
    so there is no look-ahead.
    """

    start_utc: datetime
    end_utc: datetime
    step: timedelta


@dataclass
class ReplayResult:
    cycles: int = 0
    starts: List[Tuple[datetime, str]] = field(default_factory=list)
    ends: List[Tuple[datetime, str]] = field(default_factory=list)
    failed_cycles: int = 0
    events: List[SpikeEvent] = field(default_factory=list)


class _AsOfSource:
    """Read-only view of a store that hides samples after the simulated now."""

    def __init__(self, store: InMemoryStore) -> None:
        self.store = store
        self.now: Optional[datetime] = None

    def list_feeds(self) -> List[Feed]:
        return self.store.list_feeds()

    def _cutoff(self) -> datetime:
        if self.now is None:
            raise RuntimeError("replay clock has not been set")
        return self.now

    def list_samples(self, feed_id: str, since_utc: datetime) -> List[Sample]:
        return self.store.list_samples_between(feed_id, since_utc, self._cutoff())

    def list_global_rank_samples(self, since_utc: datetime) -> List[GlobalRankSample]:
        return self.store.list_global_rank_samples_between(since_utc, self._cutoff())


class ReplayRunner:
    """Replay recorded samples through the live detector with a stepped clock.

    Uses the same detector, decision and state machine as `run`; only the
    timebase is simulated and state lives in memory.
    """

    def __init__(self, config: AppConfig, samples: InMemoryStore) -> None:
        self.config = config
        self.samples = samples

    def run(
        self,
        params: ReplayParams,
        progress: Optional[Callable[[datetime, CycleReport], None]] = None,
    ) -> ReplayResult:
        if params.step <= timedelta(0):
            raise ValueError("step must be positive")
        view = _AsOfSource(self.samples)
        states = InMemoryStore()
        sink = MemoryEventSink()
        detector = SpikeDetector(self.config, view, states, sink, clock=lambda: view.now)  # type: ignore[arg-type, return-value]

        result = ReplayResult()
        cursor = params.start_utc
        while cursor <= params.end_utc:
            view.now = cursor
            report = detector.run_cycle(now=cursor)
            result.cycles += 1
            if report.error is not None:
                result.failed_cycles += 1
            result.starts.extend((cursor, f) for f in report.activated)
            result.ends.extend((cursor, f) for f in report.recovered)
            if progress is not None:
                progress(cursor, report)
            cursor += params.step
        result.events = sink.events()
        return result
