"""
JSONL event logger.

- Write one JSON object per line
- Output to stdout
- No buffering, no batching
- Drop events below the configured minimum level
"""

from __future__ import annotations

import json
import sys
import time
from typing import Any, Mapping, Callable


_LEVELS: dict[str, int] = {
    "debug": 10,
    "info": 20,
    "warning": 30,
    "error": 40,
}


# ------------------------------------------------------------------
# Explicit output sink (patchable in tests)
# ------------------------------------------------------------------

def _stdout_print(line: str) -> None:
    sys.stdout.write(line + "\n")
    sys.stdout.flush()

_print: Callable[[str], None] = _stdout_print

_min_level: int = _LEVELS["info"]


def configure(level: str) -> None:
    """Set the minimum level; unknown names fall back to info."""
    global _min_level  # pylint: disable=global-statement
    _min_level = _LEVELS.get(level.strip().lower(), _LEVELS["info"])


def log_event(event: Mapping[str, Any], level: str = "info") -> None:
    """
    Write a single JSONL event to stdout.

    The caller supplies event_type and any context fields.
    ts_ms and level are filled in when absent.

    Never raises.
    """
    if _LEVELS.get(level, _LEVELS["info"]) < _min_level:
        return

    record: dict[str, Any] = {
        "ts_ms": time.time_ns() // 1_000_000,
        "level": level,
        **event,
    }

    try:
        line = json.dumps(record, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        # Logging must never crash the caller
        fallback: dict[str, Any] = {
            "ts_ms": record.get("ts_ms"),
            "level": "error",
            "event_type": "LOGGER_SERIALIZATION_ERROR",
            "error": str(e),
            "original_event_repr": repr(event),
        }
        line = json.dumps(fallback, ensure_ascii=False, separators=(",", ":"))

    _print(line)
