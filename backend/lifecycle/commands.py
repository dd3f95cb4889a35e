"""
Side-effect command definitions for the connection lifecycle.

Rules:
- Commands are declarative requests for side effects.
- Commands are emitted by the reducer and executed by ConnectionManager.
- No behavior, no async, no I/O, no clocks.
Invariant:
    - All concrete Command subclasses MUST be frozen dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


# =============================================================================
# Command Type Enumeration
# =============================================================================

class CommandType(str, Enum):
    """
    Canonical command types emitted by the reducer.

    Stable discriminants used for logging and runtime dispatch.
    """

    # Connection instance
    CREATE_CLIENT = "CREATE_CLIENT"
    DESTROY_CLIENT = "DESTROY_CLIENT"
    SURFACE_CHALLENGE = "SURFACE_CHALLENGE"

    # Session store
    SAVE_SESSION = "SAVE_SESSION"
    DELETE_SESSION = "DELETE_SESSION"

    # Timers
    SCHEDULE_RECONNECT = "SCHEDULE_RECONNECT"
    CANCEL_TIMER = "CANCEL_TIMER"

    # Observability
    LOG_EVENT = "LOG_EVENT"


# =============================================================================
# Base Command
# =============================================================================

class Command:
    """
    Base command type.

    command_type is an explicit discriminant and must never be inferred
    from Python type identity.
    """

    command_type: CommandType


# =============================================================================
# Connection Instance Commands
# =============================================================================

@dataclass(frozen=True)
class CreateClient(Command):
    """
    Build a new connection instance tagged with `generation`,
    loading the prior credential first, then start initialize().

    Always preceded by DestroyClient for any live instance.
    """
    generation: int
    command_type: CommandType = CommandType.CREATE_CLIENT


@dataclass(frozen=True)
class DestroyClient(Command):
    """
    Tear down the instance of `generation`.

    Failures are logged; the reference is cleared regardless.
    """
    generation: int
    reason: str
    command_type: CommandType = CommandType.DESTROY_CLIENT


@dataclass(frozen=True)
class SurfaceChallenge(Command):
    """Present a credential challenge to the operator."""
    challenge: str
    command_type: CommandType = CommandType.SURFACE_CHALLENGE


# =============================================================================
# Session Store Commands
# =============================================================================

@dataclass(frozen=True)
class SaveSession(Command):
    """Upsert the credential blob for the process session id."""
    generation: int
    blob: dict[str, Any]
    command_type: CommandType = CommandType.SAVE_SESSION


@dataclass(frozen=True)
class DeleteSession(Command):
    """Remove the persisted credential for the process session id."""
    reason: str
    command_type: CommandType = CommandType.DELETE_SESSION


# =============================================================================
# Timer Commands
# =============================================================================

@dataclass(frozen=True)
class ScheduleReconnect(Command):
    """
    Request that the manager emit ReconnectDue after delay_ms.

    Reducer remains pure: it decides *that* and *when*,
    the manager performs the waiting.
    """
    delay_ms: int
    attempt: int
    command_type: CommandType = CommandType.SCHEDULE_RECONNECT


@dataclass(frozen=True)
class CancelTimer(Command):
    """Request to cancel a previously scheduled timer."""
    timer_id: str
    command_type: CommandType = CommandType.CANCEL_TIMER


# =============================================================================
# Observability Commands
# =============================================================================

@dataclass(frozen=True)
class LogEvent(Command):
    """Request to emit a structured observability event."""
    event: dict[str, Any]
    level: str = "info"
    command_type: CommandType = CommandType.LOG_EVENT
