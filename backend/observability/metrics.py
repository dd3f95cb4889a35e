"""
Timing helpers for observability.

Every measured operation (session store I/O, webhook attempt, instance
teardown) produces exactly one METRIC_TIMER line carrying its duration
and outcome. Durations use monotonic time; nothing is aggregated
in-process.
"""

from __future__ import annotations

import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator

from observability.logger import log_event


@dataclass(frozen=True)
class _RunningTimer:
    metric: str
    started_ns: int
    session_id: str | None


_running: dict[str, _RunningTimer] = {}


def start_timer(metric: str, *, session_id: str | None = None) -> str:
    """
    Begin measuring `metric` and return its handle.

    Pair with stop_timer() in a finally block, or use timed().
    """
    handle = f"{metric}:{uuid.uuid4().hex[:8]}"
    _running[handle] = _RunningTimer(metric, time.monotonic_ns(), session_id)
    return handle


def stop_timer(
    handle: str,
    *,
    outcome: str = "ok",
    details: dict[str, Any] | None = None,
) -> int | None:
    """
    Emit the metric for `handle`.

    Returns the elapsed milliseconds, or None for an unknown or
    already-stopped handle.
    """
    running = _running.pop(handle, None)
    if running is None:
        return None

    elapsed_ms = (time.monotonic_ns() - running.started_ns) // 1_000_000

    log_event({
        "event_type": "METRIC_TIMER",
        "metric": running.metric,
        "value_ms": elapsed_ms,
        "outcome": outcome,
        "session_id": running.session_id,
        "details": details or {},
    }, level="debug")

    return elapsed_ms


@contextmanager
def timed(
    metric: str,
    *,
    session_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> Iterator[dict[str, Any]]:
    """
    Measure the enclosed block.

    Yields a details dict the block may add fields to (status codes,
    row counts). An exception marks the outcome "error", records its
    type and propagates.

        with timed("webhook_attempt", session_id=sid) as info:
            response = await client.post(...)
            info["status_code"] = response.status_code
    """
    collected: dict[str, Any] = dict(details or {})
    handle = start_timer(metric, session_id=session_id)
    outcome = "ok"
    try:
        yield collected
    except BaseException as exc:
        outcome = "error"
        collected["error_type"] = type(exc).__name__
        raise
    finally:
        stop_timer(handle, outcome=outcome, details=collected)
