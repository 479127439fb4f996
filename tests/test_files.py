from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path

from factories import NOW
from spikewatch.core.models import SpikeState
from spikewatch.data.files import CsvSampleSource, JsonStateStore, load_store_from_csv, parse_timestamp


HEADER = "feed_id,name,url,ts_utc,listeners,rank\n"


def write_csv(path: Path, rows: str) -> Path:
    path.write_text(HEADER + rows, encoding="utf-8")
    return path


def test_parse_timestamp_formats() -> None:
    expected = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert parse_timestamp("2026-01-01T12:00:00Z") == expected
    assert parse_timestamp("2026-01-01T12:00:00") == expected
    assert parse_timestamp("2026-01-01T13:00:00+01:00") == expected
    assert parse_timestamp(str(expected.timestamp())) == expected


def test_csv_rows_parse_and_skip_malformed(tmp_path: Path) -> None:
    path = write_csv(
        tmp_path / "samples.csv",
        "1234,County Fire,https://x.test/1234,2026-01-01T11:55:00Z,120,3\n"
        "1234,County Fire,https://x.test/1234,2026-01-01T11:50:00Z,110,\n"
        "1234,County Fire,https://x.test/1234,2026-01-01T12:00:00Z,130,0\n"
        "1234,County Fire,https://x.test/1234,not-a-time,130,1\n"
        "1234,County Fire,https://x.test/1234,2026-01-01T12:05:00Z,-4,1\n"
        ",Nameless,,2026-01-01T12:05:00Z,10,1\n",
    )
    store = load_store_from_csv(path)
    feeds = store.list_feeds()
    assert [f.feed_id for f in feeds] == ["1234"]
    assert feeds[0].name == "County Fire"

    samples = store.list_samples("1234", datetime(2026, 1, 1, tzinfo=timezone.utc))
    assert [s.listener_count for s in samples] == [110, 120, 130]
    assert [s.rank for s in samples] == [None, 3, None]

    ranked = store.list_global_rank_samples(datetime(2026, 1, 1, tzinfo=timezone.utc))
    assert [(g.rank, g.listener_count) for g in ranked] == [(3, 120)]


def test_csv_source_rereads_when_file_changes(tmp_path: Path) -> None:
    path = write_csv(tmp_path / "samples.csv", "a,A,,2026-01-01T11:55:00Z,100,\n")
    source = CsvSampleSource(path)
    since = datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert len(source.list_samples("a", since)) == 1

    with open(path, "a", encoding="utf-8") as fh:
        fh.write("a,A,,2026-01-01T12:00:00Z,105,\n")
    stat = path.stat()
    os.utime(path, (stat.st_atime, stat.st_mtime + 10))
    assert len(source.list_samples("a", since)) == 2


def test_json_state_store_persists(tmp_path: Path) -> None:
    path = tmp_path / "state" / "spikes.json"
    store = JsonStateStore(path)
    assert store.get_spike_state("a") == SpikeState.inactive("a")

    store.set_spike_state(SpikeState.active("a", NOW))
    store.set_spike_state(SpikeState.inactive("b"))

    reopened = JsonStateStore(path)
    assert reopened.get_spike_state("a") == SpikeState.active("a", NOW)
    assert reopened.get_spike_state("b") == SpikeState.inactive("b")
    doc = json.loads(path.read_text(encoding="utf-8"))
    assert doc["a"]["isActive"] is True
    assert doc["b"]["activatedAtUtc"] is None


def test_json_state_store_skips_inconsistent_rows(tmp_path: Path) -> None:
    path = tmp_path / "spikes.json"
    doc = {
        "ok": {"isActive": True, "activatedAtUtc": NOW.isoformat()},
        "no_since": {"isActive": True, "activatedAtUtc": None},
        "stray_since": {"isActive": False, "activatedAtUtc": NOW.isoformat()},
        "bad_time": {"isActive": True, "activatedAtUtc": "yesterday"},
        "not_a_row": [1, 2],
    }
    path.write_text(json.dumps(doc), encoding="utf-8")
    store = JsonStateStore(path)
    assert store.get_spike_state("ok") == SpikeState.active("ok", NOW)
    for feed_id in ("no_since", "stray_since", "bad_time", "not_a_row"):
        assert store.get_spike_state(feed_id) == SpikeState.inactive(feed_id)


def test_json_state_store_ignores_non_mapping_document(tmp_path: Path) -> None:
    path = tmp_path / "spikes.json"
    path.write_text("[{\"a\": 1}]", encoding="utf-8")
    assert JsonStateStore(path).get_spike_state("a") == SpikeState.inactive("a")
    path.write_text("{not json", encoding="utf-8")
    assert JsonStateStore(path).get_spike_state("a") == SpikeState.inactive("a")
