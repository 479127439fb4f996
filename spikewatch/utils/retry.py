from __future__ import annotations

import logging
import random
import threading
import time
from typing import Any, Callable, Dict, Optional, TypeVar


T = TypeVar("T")

logger = logging.getLogger(__name__)


class CallTimeout(TimeoutError):
    """An external store call did not return within its timeout."""


def exponential_backoff(
    attempt: int,
    base_seconds: float,
    cap_seconds: float,
) -> float:
    return min(cap_seconds, base_seconds * (2 ** max(0, attempt - 1)))


def with_retries(
    func: Callable[[], T],
    max_attempts: int,
    base_seconds: float,
    cap_seconds: float,
    jitter_fraction: float = 0.1,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    attempt = 1
    while True:
        try:
            return func()
        except Exception as exc:  # noqa: BLE001
            if attempt >= max_attempts:
                raise
            delay = exponential_backoff(attempt, base_seconds, cap_seconds)
            jitter = delay * jitter_fraction * (2 * random.random() - 1)
            logger.warning(
                "retrying after failure",
                extra={"attempt": attempt, "error": repr(exc), "delay_sec": round(delay + jitter, 3)},
            )
            sleep(max(0.0, delay + jitter))
            attempt += 1


def with_timeout(func: Callable[[], T], timeout_sec: Optional[float]) -> T:
    """Run func, raising CallTimeout if it takes longer than `timeout_sec`.

    Each call gets its own daemon thread; an abandoned call keeps running
    there and its result is dropped, without holding up later calls.
    """
    if timeout_sec is None:
        return func()
    outcome: Dict[str, Any] = {}

    def target() -> None:
        try:
            outcome["result"] = func()
        except Exception as exc:  # noqa: BLE001
            outcome["error"] = exc

    worker = threading.Thread(target=target, name="store-call", daemon=True)
    worker.start()
    worker.join(timeout=timeout_sec)
    if worker.is_alive():
        raise CallTimeout(f"call exceeded {timeout_sec}s")
    if "error" in outcome:
        raise outcome["error"]
    return outcome["result"]
