from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from ..config import AppConfig
from ..data.base import EventSink, SampleSource, StateStore
from ..utils.retry import with_retries, with_timeout
from .buckets import GlobalBaseline, compute_global_baseline
from .decision import DecisionTrace, evaluate_feed
from .models import Feed
from .state import ACTIVATED, RECOVERED, Transition, advance


logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class FeedOutcome:
    feed_id: str
    trace: Optional[DecisionTrace] = None
    transition: Optional[Transition] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class CycleReport:
    started_at: datetime
    feeds: int = 0
    evaluated: int = 0
    skipped: int = 0
    activated: List[str] = field(default_factory=list)
    recovered: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    error: Optional[str] = None
    interrupted: bool = False
    duration_sec: float = 0.0


class SpikeDetector:
    """Periodic detector: one evaluation cycle, then a fixed delay, repeat.

    Each cycle computes the global rank-bucket baseline once, then evaluates
    every feed against it. A feed whose loads or writes fail is skipped for
    the cycle; the others continue.
    """

    def __init__(
        self,
        config: AppConfig,
        source: SampleSource,
        store: StateStore,
        sink: EventSink,
        clock: Callable[[], datetime] = utc_now,
        on_cycle: Optional[Callable[[CycleReport], None]] = None,
    ) -> None:
        self.config = config
        self.source = source
        self.store = store
        self.sink = sink
        self.clock = clock
        self.on_cycle = on_cycle
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="SpikeDetector", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=self.config.runtime.store_timeout_sec + 5)

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        delay = self.config.detect.poll_interval_sec
        while not self._stop.is_set():
            report = self.run_cycle()
            if self.on_cycle is not None:
                self.on_cycle(report)
            # Fixed delay after completion; a slow cycle pushes the next one back.
            self._stop.wait(timeout=delay)

    # ───────────────────────────── one cycle ─────────────────────────────
    def run_cycle(self, now: Optional[datetime] = None) -> CycleReport:
        now = now or self.clock()
        started = time.monotonic()
        report = CycleReport(started_at=now)
        rt = self.config.runtime
        detect = self.config.detect

        try:
            feeds = self._cycle_call(self.source.list_feeds)
            rank_samples = self._cycle_call(
                lambda: self.source.list_global_rank_samples(now - detect.global_lookback)
            )
        except Exception as exc:  # noqa: BLE001
            # Next cycle retries; nothing was evaluated against a partial snapshot.
            report.error = repr(exc)
            report.duration_sec = time.monotonic() - started
            logger.exception("cycle aborted: could not load feeds or global samples")
            return report

        global_baseline = compute_global_baseline(rank_samples, detect.bucket_size)
        report.feeds = len(feeds)
        logger.debug(
            "global baseline",
            extra={"bucket_medians": list(global_baseline.medians().items()), "rank_samples": len(rank_samples)},
        )

        if rt.workers > 1:
            with ThreadPoolExecutor(max_workers=rt.workers, thread_name_prefix="feed-eval") as pool:
                outcomes = list(pool.map(lambda f: self._guarded_feed(f, global_baseline, now), feeds))
        else:
            outcomes = [self._guarded_feed(f, global_baseline, now) for f in feeds]

        for outcome in outcomes:
            if outcome is None:
                report.interrupted = True
            elif outcome.failed:
                report.failed.append(outcome.feed_id)
            elif outcome.transition is None:
                report.skipped += 1
            else:
                report.evaluated += 1
                if outcome.transition.kind == ACTIVATED:
                    report.activated.append(outcome.feed_id)
                elif outcome.transition.kind == RECOVERED:
                    report.recovered.append(outcome.feed_id)

        report.duration_sec = time.monotonic() - started
        logger.info(
            "cycle complete",
            extra={
                "feeds": report.feeds,
                "evaluated": report.evaluated,
                "skipped": report.skipped,
                "failed": len(report.failed),
                "activated": len(report.activated),
                "recovered": len(report.recovered),
                "interrupted": report.interrupted,
                "duration_sec": round(report.duration_sec, 3),
            },
        )
        return report

    def _cycle_call(self, func):  # type: ignore[no-untyped-def]
        rt = self.config.runtime
        return with_retries(
            lambda: with_timeout(func, rt.store_timeout_sec),
            max_attempts=rt.max_retries,
            base_seconds=rt.backoff_base_sec,
            cap_seconds=rt.backoff_cap_sec,
        )

    def _guarded_feed(self, feed: Feed, global_baseline: GlobalBaseline, now: datetime) -> Optional[FeedOutcome]:
        # Shutdown is cooperative: checked between feeds, never mid-feed.
        if self._stop.is_set():
            return None
        try:
            return self.evaluate(feed, global_baseline, now)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "feed skipped this cycle",
                exc_info=True,
                extra={"feed_id": feed.feed_id, "error": repr(exc)},
            )
            return FeedOutcome(feed_id=feed.feed_id, error=repr(exc))

    def evaluate(self, feed: Feed, global_baseline: GlobalBaseline, now: datetime) -> FeedOutcome:
        """Decide for one feed and advance its state; raises on collaborator failure."""
        detect = self.config.detect
        timeout = self.config.runtime.store_timeout_sec

        samples = with_timeout(lambda: self.source.list_samples(feed.feed_id, now - detect.lookback), timeout)
        trace = evaluate_feed(feed.feed_id, samples, global_baseline, detect, now)
        if trace.decision is None:
            return FeedOutcome(feed_id=feed.feed_id, trace=trace)

        state = with_timeout(lambda: self.store.get_spike_state(feed.feed_id), timeout)
        transition = advance(
            state, trace, feed, now, recovery_takes_precedence=detect.recovery_takes_precedence
        )

        if transition.kind == ACTIVATED and transition.event is not None:
            # Publish first: a failed state write re-emits next cycle rather than losing the alert.
            self.sink.publish(transition.event)
            with_timeout(lambda: self.store.set_spike_state(transition.state), timeout)
            logger.info(
                "spike START",
                extra={
                    "feed_id": feed.feed_id,
                    "tier": trace.tier,
                    "robust_z": round(trace.current_z, 2),
                    "median": round(trace.median, 1),
                    "mad": round(trace.mad, 1),
                    "listeners": transition.event.listener_count,
                },
            )
        elif transition.kind == RECOVERED:
            with_timeout(lambda: self.store.set_spike_state(transition.state), timeout)
            logger.info(
                "spike END",
                extra={"feed_id": feed.feed_id, "tier": trace.tier, "robust_z": round(trace.current_z, 2)},
            )
        return FeedOutcome(feed_id=feed.feed_id, trace=trace, transition=transition)
