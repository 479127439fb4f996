from __future__ import annotations

import json
import signal
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

import typer

from spikewatch.config import AppConfig, ConfigError, load_config
from spikewatch.core.detector import SpikeDetector
from spikewatch.core.inspection import inspect as inspect_feed
from spikewatch.core.models import SpikeState
from spikewatch.data.base import EventSink
from spikewatch.data.events import JsonlOutboxSink, LoggingEventSink, MultiEventSink
from spikewatch.data.files import CsvSampleSource, JsonStateStore, load_store_from_csv, parse_timestamp
from spikewatch.data.replay import ReplayParams, ReplayRunner
from spikewatch.utils.logging import setup_logging


app = typer.Typer(add_completion=False)


def _load(config: Optional[Path]) -> AppConfig:
    try:
        return load_config(config)
    except ConfigError as exc:
        typer.echo(f"configuration error: {exc}", err=True)
        raise typer.Exit(code=2)


@app.command()
def run(
    samples: Path = typer.Option(..., exists=True, dir_okay=False, help="CSV of feed samples"),
    state: Path = typer.Option(Path("spike_state.json"), help="JSON file holding spike states"),
    outbox: Optional[Path] = typer.Option(None, help="Append spike envelopes to this JSONL file"),
    config: Optional[Path] = typer.Option(None, help="YAML config file"),
    log_level: Optional[str] = typer.Option(None),
) -> None:
    cfg = _load(config)
    setup_logging(log_level or cfg.env.LOG_LEVEL, service=cfg.env.SERVICE_NAME)

    sinks: List[EventSink] = [LoggingEventSink()]
    if outbox is not None:
        sinks.append(JsonlOutboxSink(outbox))
    detector = SpikeDetector(cfg, CsvSampleSource(samples), JsonStateStore(state), MultiEventSink(sinks))

    stop_event = threading.Event()

    def handle_signal(signum, frame):  # noqa: ANN001, D401
        stop_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    detector.start()
    typer.echo("Running. Press Ctrl+C to stop.")
    try:
        while not stop_event.is_set() and detector.is_running():
            time.sleep(0.5)
    finally:
        detector.stop()


@app.command()
def inspect(
    feed_id: str = typer.Argument(..., help="Feed to inspect"),
    samples: Path = typer.Option(..., exists=True, dir_okay=False, help="CSV of feed samples"),
    now: Optional[str] = typer.Option(None, help="Evaluation time (ISO8601 UTC); defaults to now"),
    active: bool = typer.Option(False, help="Evaluate as if the feed were currently Active"),
    config: Optional[Path] = typer.Option(None, help="YAML config file"),
) -> None:
    """Print the decision trace for one feed as JSON. Nothing is written."""
    cfg = _load(config)
    detect = cfg.detect
    store = load_store_from_csv(samples)
    at = parse_timestamp(now) if now else datetime.now(timezone.utc)

    state = SpikeState.active(feed_id, at) if active else SpikeState.inactive(feed_id)
    trace = inspect_feed(
        feed_id,
        store.list_samples_between(feed_id, at - detect.lookback, at),
        store.list_global_rank_samples_between(at - detect.global_lookback, at),
        detect,
        at,
        state=state,
    )
    typer.echo(json.dumps(trace.to_dict(), indent=2))


@app.command()
def replay(
    samples: Path = typer.Option(..., exists=True, dir_okay=False, help="CSV of feed samples"),
    start_utc: Optional[str] = typer.Option(None, help="ISO8601 UTC start; defaults to first sample"),
    end_utc: Optional[str] = typer.Option(None, help="ISO8601 UTC end; defaults to last sample"),
    step_sec: int = typer.Option(300, help="Simulated seconds between cycles"),
    config: Optional[Path] = typer.Option(None, help="YAML config file"),
    log_level: str = typer.Option("WARNING"),
) -> None:
    """Replay recorded samples through the detector with a simulated clock.

    Uses the same decision and state logic as `run`; only the clock is
    simulated and spike state stays in memory.
    """
    cfg = _load(config)
    setup_logging(log_level, service=cfg.env.SERVICE_NAME)
    store = load_store_from_csv(samples)
    span = store.time_span()
    if span is None:
        typer.echo("No samples to replay.")
        raise typer.Exit(code=1)

    start = parse_timestamp(start_utc) if start_utc else span[0]
    end = parse_timestamp(end_utc) if end_utc else span[1]
    result = ReplayRunner(cfg, store).run(
        ReplayParams(start_utc=start, end_utc=end, step=timedelta(seconds=step_sec))
    )

    for ts, feed_id in result.starts:
        typer.echo(f"{ts.isoformat()} START {feed_id}")
    for ts, feed_id in result.ends:
        typer.echo(f"{ts.isoformat()} END   {feed_id}")
    typer.echo(
        f"cycles={result.cycles} starts={len(result.starts)} ends={len(result.ends)} "
        f"failed_cycles={result.failed_cycles}"
    )


@app.command("check-config")
def check_config(config: Optional[Path] = typer.Option(None, help="YAML config file")) -> None:
    """Validate configuration and print the merged result."""
    cfg = _load(config)
    typer.echo(json.dumps(cfg.runtime.model_dump(), indent=2))


if __name__ == "__main__":
    app()
