from __future__ import annotations

import csv
import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from ..core.models import Feed, GlobalRankSample, Sample, SpikeState
from .memory import InMemoryStore


logger = logging.getLogger(__name__)

CSV_COLUMNS = ("feed_id", "name", "url", "ts_utc", "listeners", "rank")


def parse_timestamp(text: str) -> datetime:
    """Parse ISO-8601 or UNIX seconds into an aware UTC datetime."""
    text = text.strip()
    try:
        return datetime.fromtimestamp(float(text), tz=timezone.utc)
    except ValueError:
        pass
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _parse_row(row: Dict[str, str]) -> Optional[Tuple[Feed, Sample]]:
    try:
        feed_id = (row.get("feed_id") or "").strip()
        if not feed_id:
            return None
        ts = parse_timestamp(row.get("ts_utc") or "")
        listeners = int(float(row.get("listeners") or ""))
    except (TypeError, ValueError):
        return None
    if listeners < 0:
        return None
    rank_text = (row.get("rank") or "").strip()
    rank: Optional[int] = None
    if rank_text:
        try:
            rank = int(float(rank_text))
        except ValueError:
            rank = None
        # Non-positive ranks mean "unranked"
        if rank is not None and rank < 1:
            rank = None
    feed = Feed(feed_id=feed_id, name=(row.get("name") or feed_id).strip(), url=(row.get("url") or "").strip())
    return feed, Sample(feed_id=feed_id, timestamp_utc=ts, listener_count=listeners, rank=rank)


def read_samples_csv(path: Path) -> Iterator[Tuple[Feed, Sample]]:
    """Yield (feed, sample) pairs from a CSV export, skipping malformed rows."""
    skipped = 0
    with open(path, "r", encoding="utf-8", newline="") as fh:
        reader = csv.DictReader(fh)
        for row in reader:
            parsed = _parse_row(row)
            if parsed is None:
                skipped += 1
                continue
            yield parsed
    if skipped:
        logger.warning("skipped malformed sample rows", extra={"path": str(path), "skipped": skipped})


def load_store_from_csv(path: Path, store: Optional[InMemoryStore] = None) -> InMemoryStore:
    store = store if store is not None else InMemoryStore()
    samples: List[Sample] = []
    for feed, sample in read_samples_csv(path):
        store.upsert_feed(feed)
        samples.append(sample)
    store.add_samples(sorted(samples, key=lambda s: s.timestamp_utc))
    return store


def _parse_state(feed_id: str, item: object) -> Optional[SpikeState]:
    if not isinstance(item, dict):
        return None
    activated = item.get("activatedAtUtc")
    try:
        return SpikeState(
            feed_id=feed_id,
            is_active=bool(item.get("isActive")),
            activated_at_utc=parse_timestamp(str(activated)) if activated else None,
        )
    except ValueError:
        return None


class CsvSampleSource:
    """Sample source backed by a CSV export that an ingester keeps appending to.

    The file is re-read at most once per change of its modification time, so
    every cycle sees the latest rows.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.RLock()
        self._mtime: Optional[float] = None
        self._store = InMemoryStore()

    def _current(self) -> InMemoryStore:
        with self._lock:
            mtime = self.path.stat().st_mtime
            if mtime != self._mtime:
                self._store = load_store_from_csv(self.path)
                self._mtime = mtime
            return self._store

    def list_feeds(self) -> List[Feed]:
        return self._current().list_feeds()

    def list_samples(self, feed_id: str, since_utc: datetime) -> List[Sample]:
        return self._current().list_samples(feed_id, since_utc)

    def list_global_rank_samples(self, since_utc: datetime) -> List[GlobalRankSample]:
        return self._current().list_global_rank_samples(since_utc)


class JsonStateStore:
    """Spike states persisted as one JSON document keyed by feed id."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.RLock()
        self._states: Dict[str, SpikeState] = self._read()

    def _read(self) -> Dict[str, SpikeState]:
        if not self.path.exists():
            return {}
        with open(self.path, "r", encoding="utf-8") as fh:
            try:
                raw = json.load(fh) or {}
            except ValueError:
                logger.warning("unreadable state file; starting with no active spikes", extra={"path": str(self.path)})
                return {}
        if not isinstance(raw, dict):
            logger.warning("state file is not a mapping; starting with no active spikes", extra={"path": str(self.path)})
            return {}
        states: Dict[str, SpikeState] = {}
        skipped = 0
        for feed_id, item in raw.items():
            state = _parse_state(feed_id, item)
            if state is None:
                skipped += 1
                continue
            states[feed_id] = state
        if skipped:
            logger.warning("skipped malformed spike states", extra={"path": str(self.path), "skipped": skipped})
        return states

    def _write(self) -> None:
        doc = {
            feed_id: {
                "isActive": s.is_active,
                "activatedAtUtc": s.activated_at_utc.isoformat() if s.activated_at_utc else None,
            }
            for feed_id, s in sorted(self._states.items())
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix=".state-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(doc, fh, indent=2)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def get_spike_state(self, feed_id: str) -> SpikeState:
        with self._lock:
            return self._states.get(feed_id) or SpikeState.inactive(feed_id)

    def set_spike_state(self, state: SpikeState) -> None:
        with self._lock:
            self._states[state.feed_id] = state
            self._write()
