"""
Origin of a start request.

Used by the reducer to apply per-origin policy (e.g. the watchdog
respecting ERROR) and carried into logs for observability.
"""

from __future__ import annotations

from enum import Enum


class StartSource(str, Enum):
    BOOT = "BOOT"
    OPERATOR = "OPERATOR"
    RECONNECT = "RECONNECT"
    WATCHDOG = "WATCHDOG"
