"""
Authoritative connection state enumeration.

Rules:
- This enum defines ONLY the connection lifecycle states.
- No behavior, no helper methods, no side effects.
- Transitions are defined exclusively in the reducer.
"""

from __future__ import annotations

from enum import Enum


class ConnectionState(str, Enum):
    """
    Lifecycle of the single messaging connection owned by the process.

    Exactly one value holds at any instant. Only the reducer changes it;
    every other component reads it through ConnectionManager.state.
    """

    DISCONNECTED = "DISCONNECTED"
    INITIALIZING = "INITIALIZING"
    AWAITING_CREDENTIAL = "AWAITING_CREDENTIAL"
    AUTHENTICATING = "AUTHENTICATING"
    READY = "READY"
    ERROR = "ERROR"
