from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ..core.models import SpikeEvent
from .base import EventSink
from .files import parse_timestamp


logger = logging.getLogger(__name__)


class EventTypes:
    SPIKE = "spike"


@dataclass(frozen=True)
class EventEnvelope:
    """What goes on the queue: a typed, JSON-encoded payload with enqueue time."""

    event_type: str
    payload_json: str
    enqueued_at_utc: datetime

    def to_dict(self) -> Dict[str, str]:
        return {
            "event_type": self.event_type,
            "payload": self.payload_json,
            "enqueued_at_utc": self.enqueued_at_utc.isoformat(),
        }


def spike_payload(event: SpikeEvent) -> Dict[str, Any]:
    return {
        "feedId": event.feed_id,
        "name": event.name,
        "url": event.url,
        "timestampUtc": event.timestamp_utc.isoformat(),
        "listenerCount": event.listener_count,
        "median": event.median,
        "mad": event.mad,
        "robustZ": event.robust_z,
        "tier": event.tier,
    }


def spike_from_payload(payload_json: str) -> SpikeEvent:
    d = json.loads(payload_json)
    return SpikeEvent(
        feed_id=d["feedId"],
        name=d.get("name", ""),
        url=d.get("url", ""),
        timestamp_utc=parse_timestamp(d["timestampUtc"]),
        listener_count=int(d["listenerCount"]),
        median=float(d["median"]),
        mad=float(d["mad"]),
        robust_z=float(d["robustZ"]),
        tier=d.get("tier", ""),
    )


def envelope_for(event: SpikeEvent, now: Optional[datetime] = None) -> EventEnvelope:
    return EventEnvelope(
        event_type=EventTypes.SPIKE,
        payload_json=json.dumps(spike_payload(event), separators=(",", ":")),
        enqueued_at_utc=now or datetime.now(timezone.utc),
    )


class LoggingEventSink:
    """Console sink: one alert line per spike."""

    def publish(self, event: SpikeEvent) -> None:
        logger.info(
            f"ALERT {event.name} ({event.feed_id}) listeners={event.listener_count} "
            f"rz={event.robust_z:.2f} median={event.median:.1f} mad={event.mad:.1f} url={event.url}",
            extra={"event_type": EventTypes.SPIKE, "feed_id": event.feed_id},
        )


class MemoryEventSink:
    """Collects envelopes in order; used by replay and tests."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._envelopes: List[EventEnvelope] = []

    def publish(self, event: SpikeEvent) -> None:
        with self._lock:
            self._envelopes.append(envelope_for(event))

    def envelopes(self) -> List[EventEnvelope]:
        with self._lock:
            return list(self._envelopes)

    def events(self) -> List[SpikeEvent]:
        return [spike_from_payload(e.payload_json) for e in self.envelopes()]


class JsonlOutboxSink:
    """Appends one envelope per line to a file for a queue relay to pick up."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.RLock()

    def publish(self, event: SpikeEvent) -> None:
        line = json.dumps(envelope_for(event).to_dict(), ensure_ascii=False)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as fh:
                fh.write(line + "\n")


class MultiEventSink:
    """Fan out to several sinks; a failing sink fails the publish."""

    def __init__(self, sinks: Sequence[EventSink]) -> None:
        self.sinks = list(sinks)

    def publish(self, event: SpikeEvent) -> None:
        for sink in self.sinks:
            sink.publish(event)
