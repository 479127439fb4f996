from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


MAX_RANK = 25


@dataclass(frozen=True)
class Feed:
    feed_id: str
    name: str = ""
    url: str = ""


@dataclass(frozen=True)
class Sample:
    feed_id: str
    timestamp_utc: datetime
    listener_count: int
    rank: Optional[int] = None

    @property
    def has_rank(self) -> bool:
        return self.rank is not None and self.rank >= 1


@dataclass(frozen=True)
class GlobalRankSample:
    rank: int
    listener_count: float


@dataclass(frozen=True)
class Baseline:
    median: float
    mad: float
    sample_count: int


@dataclass(frozen=True)
class SpikeState:
    """Persisted per-feed detection state.

    `activated_at_utc` is set exactly when `is_active` is true.
    """

    feed_id: str
    is_active: bool = False
    activated_at_utc: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.is_active != (self.activated_at_utc is not None):
            raise ValueError(
                f"SpikeState for {self.feed_id!r}: activated_at_utc must be set iff is_active"
            )

    @classmethod
    def inactive(cls, feed_id: str) -> "SpikeState":
        return cls(feed_id=feed_id)

    @classmethod
    def active(cls, feed_id: str, since: datetime) -> "SpikeState":
        return cls(feed_id=feed_id, is_active=True, activated_at_utc=since)


@dataclass(frozen=True)
class SpikeEvent:
    feed_id: str
    name: str
    url: str
    timestamp_utc: datetime
    listener_count: int
    median: float
    mad: float
    robust_z: float
    tier: str = field(default="", compare=False)
