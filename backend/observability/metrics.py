"""
Latency timers for observability.

Responsibilities:
- Measure durations using monotonic time
- Emit one METRIC_TIMER event per measurement via observability.logger
- Never aggregate

Used for upstream open latency and session handshake latency.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Any, Iterator

import observability.logger as logger


@contextmanager
def timed(
    name: str,
    *,
    session_id: str | None = None,
    link_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> Iterator[dict[str, Any]]:
    """
    Context manager for measuring durations safely.

    Guarantees:
    - Metric is emitted exactly once, even if the block raises
    - The yielded dict can be filled in by the block; its contents are
      merged into `details` (e.g. the session id learned mid-block)
    - "ok" records whether the block completed without an exception

    Usage:
        with timed("session_handshake", link_id=link.link_id) as extra:
            session_id = await wait_for_created()
            extra["session_id"] = session_id
    """
    extra: dict[str, Any] = {}
    start_ns = time.monotonic_ns()
    ok = False
    try:
        yield extra
        ok = True
    finally:
        duration_ms = (time.monotonic_ns() - start_ns) // 1_000_000
        logger.log_event({
            "event_type": "METRIC_TIMER",
            "metric": name,
            "value_ms": duration_ms,
            "ok": ok,
            "session_id": session_id,
            "link_id": link_id,
            "details": {**(details or {}), **extra},
        })
