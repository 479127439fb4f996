"""Listener-count spike detection for live audio feeds.

The engine watches periodic listener samples per feed and decides, once per
cycle, whether a feed is spiking against its own history, against its rank
cohort, or against an absolute listener floor. Decisions drive a per-feed
Active/Inactive state machine that publishes a spike event on activation.
"""

__all__ = [
    "config",
    "core",
    "data",
    "utils",
]

__version__ = "0.3.0"
