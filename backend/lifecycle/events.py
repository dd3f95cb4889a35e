"""
Event definitions for the connection lifecycle reducer.

Rules:
- Events describe facts that have occurred (or requests that arrived).
- Events carry data only (no behavior).
- All reducer decisions are based on these events.
- No clocks, no timers, no async, no side effects.

Events raised by a connection instance carry the instance generation so
the reducer can drop stragglers from an instance already torn down.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from lifecycle.enums.source import StartSource


# =============================================================================
# Event Type Enumeration
# =============================================================================

class EventType(str, Enum):
    """
    Canonical event types understood by the reducer.

    Every (state, event_type) pair must be explicitly handled
    or explicitly ignored by the reducer.
    """

    # ------------------------------------------------------------------
    # Control (operator, boot, timers, watchdog)
    # ------------------------------------------------------------------
    START_REQUESTED = "START_REQUESTED"
    RESTART_REQUESTED = "RESTART_REQUESTED"
    SESSION_CLEAR_REQUESTED = "SESSION_CLEAR_REQUESTED"
    SHUTDOWN_REQUESTED = "SHUTDOWN_REQUESTED"
    RECONNECT_DUE = "RECONNECT_DUE"
    HEALTH_CHECK_FAILED = "HEALTH_CHECK_FAILED"

    # ------------------------------------------------------------------
    # Connection instance lifecycle
    # ------------------------------------------------------------------
    CREDENTIAL_CHALLENGE = "CREDENTIAL_CHALLENGE"
    AUTHENTICATED = "AUTHENTICATED"
    READY = "READY"
    SESSION_UPDATED = "SESSION_UPDATED"
    REMOTE_SESSION_SAVED = "REMOTE_SESSION_SAVED"
    DISCONNECTED = "DISCONNECTED"
    AUTH_FAILURE = "AUTH_FAILURE"
    CLIENT_FAULT = "CLIENT_FAULT"
    INIT_FAILED = "INIT_FAILED"


# =============================================================================
# Base Events
# =============================================================================

@dataclass(frozen=True)
class Event:
    """
    Base event type.

    All events must specify:
    - event_type: discriminant
    - ts_ms: timestamp provided by the source (or fake in tests)
    """

    event_type: EventType
    ts_ms: int


@dataclass(frozen=True)
class ClientEvent(Event):
    """
    Base class for events emitted by a connection instance.

    The reducer MUST ignore events whose generation does not match the
    currently live instance.
    """

    generation: int


# =============================================================================
# Control Events
# =============================================================================

@dataclass(frozen=True)
class StartRequested(Event):
    """A fresh connection was requested (boot, operator, watchdog)."""
    source: StartSource = StartSource.BOOT


@dataclass(frozen=True)
class RestartRequested(Event):
    """Operator asked to tear down and rebuild the connection, whatever the state."""


@dataclass(frozen=True)
class SessionClearRequested(Event):
    """Operator asked to drop the persisted credential."""


@dataclass(frozen=True)
class ShutdownRequested(Event):
    """Process is stopping; no further starts are honored."""


@dataclass(frozen=True)
class ReconnectDue(Event):
    """Backoff timer for a scheduled reconnect expired."""


@dataclass(frozen=True)
class HealthCheckFailed(Event):
    """
    Watchdog probe found the live instance not connected.

    generation identifies the probed instance.
    """
    generation: int
    reason: str


# =============================================================================
# Connection Instance Events
# =============================================================================

@dataclass(frozen=True)
class CredentialChallenge(ClientEvent):
    """Instance needs the operator to present a one-time credential."""
    challenge: str


@dataclass(frozen=True)
class Authenticated(ClientEvent):
    """Remote endpoint accepted the credential."""


@dataclass(frozen=True)
class Ready(ClientEvent):
    """Instance is fully connected and able to send/receive."""


@dataclass(frozen=True)
class SessionUpdated(ClientEvent):
    """Instance produced a (refreshed) credential blob to persist."""
    blob: dict[str, Any]


@dataclass(frozen=True)
class RemoteSessionSaved(ClientEvent):
    """Credential blob was persisted. Informational only."""


@dataclass(frozen=True)
class Disconnected(ClientEvent):
    """Instance lost its connection."""
    reason: str | None = None


@dataclass(frozen=True)
class AuthFailure(ClientEvent):
    """Remote endpoint rejected the credential."""
    message: str | None = None


@dataclass(frozen=True)
class ClientFault(ClientEvent):
    """Unhandled instance-level error."""
    reason: str


@dataclass(frozen=True)
class InitFailed(ClientEvent):
    """Instance construction or initialize() raised."""
    reason: str
