"""
Pure connection lifecycle reducer.

(snapshot, event) -> (new_snapshot, commands)

Rules:
- Pure: no side effects, no IO, no clocks.
- Deterministic: output depends only on inputs.
- Total: every (state, event) pair is handled or explicitly ignored (logged).

Transition table:

    DISCONNECTED/ERROR   start requested       -> INITIALIZING   create instance
    INITIALIZING..READY  start requested       -> (no-op)
    INITIALIZING         credential challenge  -> AWAITING_CREDENTIAL
    INITIALIZING/AWAIT.  authenticated         -> AUTHENTICATING reset counter
    handshake states     ready                 -> READY          reset counter
    READY                disconnected          -> DISCONNECTED   destroy, schedule reconnect
    other                disconnected          -> DISCONNECTED   destroy, no reconnect
    any                  auth failure          -> ERROR          delete session, destroy
    any                  client fault          -> ERROR
    INITIALIZING..       init failed           -> ERROR          destroy
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any

from lifecycle.commands import (
    CancelTimer,
    Command,
    CreateClient,
    DeleteSession,
    DestroyClient,
    LogEvent,
    SaveSession,
    ScheduleReconnect,
    SurfaceChallenge,
)
from lifecycle.enums.source import StartSource
from lifecycle.enums.state import ConnectionState
from lifecycle.events import (
    Authenticated,
    AuthFailure,
    ClientEvent,
    ClientFault,
    CredentialChallenge,
    Disconnected,
    Event,
    HealthCheckFailed,
    InitFailed,
    Ready,
    ReconnectDue,
    RemoteSessionSaved,
    RestartRequested,
    SessionClearRequested,
    SessionUpdated,
    ShutdownRequested,
    StartRequested,
)
from lifecycle.retry import get_retry_delay_ms, next_attempt, reset_attempt
from lifecycle.state_dataclass import ConnectionSnapshot


# =============================================================================
# Timer IDs
# =============================================================================

TIMER_RECONNECT = "reconnect"


# =============================================================================
# State groups
# =============================================================================

_STARTED_STATES = frozenset({
    ConnectionState.INITIALIZING,
    ConnectionState.AWAITING_CREDENTIAL,
    ConnectionState.AUTHENTICATING,
    ConnectionState.READY,
})

_HANDSHAKE_STATES = frozenset({
    ConnectionState.INITIALIZING,
    ConnectionState.AWAITING_CREDENTIAL,
    ConnectionState.AUTHENTICATING,
})

_PRE_AUTH_STATES = frozenset({
    ConnectionState.INITIALIZING,
    ConnectionState.AWAITING_CREDENTIAL,
})


# =============================================================================
# Small helpers
# =============================================================================

def _log(
    snapshot: ConnectionSnapshot,
    event: Event,
    decision: str,
    details: dict[str, Any] | None = None,
    level: str = "info",
) -> LogEvent:
    return LogEvent(
        event={
            "ts_ms": event.ts_ms,
            "state": snapshot.state.value,
            "event_type": event.event_type.value,
            "decision": decision,
            "generation": snapshot.generation,
            "reconnect_attempts": snapshot.reconnect_attempt.attempt,
            "details": details or {},
        },
        level=level,
    )


def _logs_last(commands: tuple[Command, ...]) -> tuple[Command, ...]:
    non_logs: list[Command] = []
    logs: list[Command] = []
    state_change_logs: list[Command] = []

    for command in commands:
        if isinstance(command, LogEvent):
            if command.event.get("decision") == "state_changed":
                state_change_logs.append(command)
            else:
                logs.append(command)
        else:
            non_logs.append(command)

    return tuple(non_logs + logs + state_change_logs)


def _ignore(
    snapshot: ConnectionSnapshot,
    event: Event,
    reason: str,
    level: str = "debug",
) -> tuple[ConnectionSnapshot, tuple[Command, ...]]:
    return snapshot, (_log(snapshot, event, "ignore", {"reason": reason}, level),)


def _state_changed(
    prev: ConnectionSnapshot,
    new: ConnectionSnapshot,
    event: Event,
    source: str,
) -> tuple[Command, ...]:
    if prev.state is new.state:
        return ()
    return (
        _log(
            new,
            event,
            "state_changed",
            {
                "from_state": prev.state.value,
                "to_state": new.state.value,
                "source": source,
            },
        ),
    )


def _teardown(snapshot: ConnectionSnapshot, reason: str) -> tuple[Command, ...]:
    """Commands that clear the pending timer and the live instance, if any."""
    cmds: list[Command] = []
    if snapshot.reconnect_pending:
        cmds.append(CancelTimer(timer_id=TIMER_RECONNECT))
    if snapshot.client_present:
        cmds.append(DestroyClient(generation=snapshot.generation, reason=reason))
    return tuple(cmds)


def _start_client(
    snapshot: ConnectionSnapshot,
    event: Event,
    source: str,
    *,
    reset_counter: bool = False,
) -> tuple[ConnectionSnapshot, tuple[Command, ...]]:
    """
    Tear down whatever is live and construct the next generation.

    Teardown commands are always emitted before CreateClient so the
    manager observes destroy completion first.
    """
    teardown = _teardown(snapshot, reason=f"replaced:{source}")
    new_generation = snapshot.generation + 1

    new_snapshot = replace(
        snapshot,
        state=ConnectionState.INITIALIZING,
        generation=new_generation,
        client_present=True,
        reconnect_pending=False,
        last_error=None,
    )
    if reset_counter:
        new_snapshot = replace(
            new_snapshot,
            reconnect_attempt=reset_attempt(),
            reconnect_delay_ms=snapshot.policy.reconnect_backoff.initial_delay_ms,
        )

    return new_snapshot, _logs_last(
        teardown
        + (
            CreateClient(generation=new_generation),
            _log(new_snapshot, event, "start_client", {"source": source}),
        )
        + _state_changed(snapshot, new_snapshot, event, source)
    )


def _schedule_reconnect(
    snapshot: ConnectionSnapshot,
    event: Event,
) -> tuple[ConnectionSnapshot, tuple[Command, ...]]:
    """
    delay = backoff(attempts so far), then count this attempt.

    Caller has already cleared the live instance.
    """
    delay_ms = get_retry_delay_ms(snapshot.policy.reconnect_backoff, snapshot.reconnect_attempt)
    attempt = next_attempt(snapshot.reconnect_attempt)

    new_snapshot = replace(
        snapshot,
        reconnect_attempt=attempt,
        reconnect_delay_ms=delay_ms,
        reconnect_pending=True,
    )
    return new_snapshot, (
        ScheduleReconnect(delay_ms=delay_ms, attempt=attempt.attempt),
        _log(
            new_snapshot,
            event,
            "reconnect_scheduled",
            {"attempt": attempt.attempt, "delay_ms": delay_ms},
        ),
    )


# =============================================================================
# Reducer
# =============================================================================

def reduce(  # pylint: disable=too-many-return-statements,too-many-branches
    snapshot: ConnectionSnapshot, event: Event
) -> tuple[ConnectionSnapshot, tuple[Command, ...]]:
    """
    Pure reducer for the connection lifecycle state machine.

    Given the current snapshot and a single event, returns:
    - the next snapshot
    - a tuple of commands describing required side effects

    Properties:
    - Deterministic: no IO, clocks, or randomness
    - Total: every (state, event) pair is handled or explicitly ignored
    - Generation-safe: ignores events from torn-down instances
    """
    # ------------------------------------------------------------------
    # Shutdown gating
    # ------------------------------------------------------------------
    if isinstance(event, ShutdownRequested):
        if snapshot.shutting_down:
            return _ignore(snapshot, event, "already_shutting_down")

        new_snapshot = replace(
            snapshot,
            state=ConnectionState.DISCONNECTED,
            client_present=False,
            reconnect_pending=False,
            shutting_down=True,
        )
        return new_snapshot, _logs_last(
            _teardown(snapshot, reason="shutdown")
            + (_log(new_snapshot, event, "shutdown"),)
            + _state_changed(snapshot, new_snapshot, event, "shutdown")
        )

    if snapshot.shutting_down:
        return _ignore(snapshot, event, "shutting_down")

    # ------------------------------------------------------------------
    # Generation gating
    # ------------------------------------------------------------------
    if isinstance(event, (ClientEvent, HealthCheckFailed)):
        if not snapshot.client_present or event.generation != snapshot.generation:
            return _ignore(
                snapshot,
                event,
                "stale_generation",
            )

    # ------------------------------------------------------------------
    # Control events
    # ------------------------------------------------------------------
    if isinstance(event, StartRequested):
        if snapshot.client_present or snapshot.state in _STARTED_STATES:
            return _ignore(snapshot, event, "already_started", level="warning")

        if (
            snapshot.state is ConnectionState.ERROR
            and event.source is StartSource.WATCHDOG
            and snapshot.policy.watchdog_respects_error
        ):
            return _ignore(snapshot, event, "error_requires_operator", level="warning")

        return _start_client(
            snapshot,
            event,
            event.source.value.lower(),
            reset_counter=event.source is StartSource.OPERATOR,
        )

    if isinstance(event, RestartRequested):
        return _start_client(snapshot, event, "operator_restart", reset_counter=True)

    if isinstance(event, SessionClearRequested):
        new_snapshot = replace(
            snapshot,
            state=ConnectionState.DISCONNECTED,
            client_present=False,
            reconnect_pending=False,
            reconnect_attempt=reset_attempt(),
            reconnect_delay_ms=snapshot.policy.reconnect_backoff.initial_delay_ms,
        )
        return new_snapshot, _logs_last(
            _teardown(snapshot, reason="session_cleared")
            + (
                DeleteSession(reason="operator_request"),
                _log(new_snapshot, event, "session_cleared", level="warning"),
            )
            + _state_changed(snapshot, new_snapshot, event, "session_cleared")
        )

    if isinstance(event, ReconnectDue):
        if not snapshot.reconnect_pending:
            return _ignore(snapshot, event, "no_reconnect_pending")

        if snapshot.client_present or snapshot.state in (
            ConnectionState.INITIALIZING,
            ConnectionState.READY,
        ):
            cleared = replace(snapshot, reconnect_pending=False)
            return _ignore(cleared, event, "already_started", level="warning")

        return _start_client(snapshot, event, StartSource.RECONNECT.value.lower())

    if isinstance(event, HealthCheckFailed):
        if snapshot.state is ConnectionState.AWAITING_CREDENTIAL:
            return _ignore(snapshot, event, "awaiting_credential")

        if (
            snapshot.state is ConnectionState.ERROR
            and snapshot.policy.watchdog_respects_error
        ):
            return _ignore(snapshot, event, "error_requires_operator", level="warning")

        new_snapshot, cmds = _start_client(snapshot, event, StartSource.WATCHDOG.value.lower())
        return new_snapshot, _logs_last(
            cmds
            + (
                _log(
                    new_snapshot,
                    event,
                    "health_check_restart",
                    {"reason": event.reason, "failed_generation": event.generation},
                    level="warning",
                ),
            )
        )

    # ------------------------------------------------------------------
    # Connection instance events (generation already verified)
    # ------------------------------------------------------------------
    if isinstance(event, CredentialChallenge):
        if snapshot.state not in _PRE_AUTH_STATES:
            return _ignore(snapshot, event, f"challenge_in_{snapshot.state.value.lower()}")

        new_snapshot = replace(snapshot, state=ConnectionState.AWAITING_CREDENTIAL)
        return new_snapshot, _logs_last(
            (
                SurfaceChallenge(challenge=event.challenge),
                _log(new_snapshot, event, "credential_challenge", level="warning"),
            )
            + _state_changed(snapshot, new_snapshot, event, "credential_challenge")
        )

    if isinstance(event, Authenticated):
        if snapshot.state not in _PRE_AUTH_STATES:
            return _ignore(snapshot, event, f"authenticated_in_{snapshot.state.value.lower()}")

        new_snapshot = replace(
            snapshot,
            state=ConnectionState.AUTHENTICATING,
            reconnect_attempt=reset_attempt(),
            reconnect_delay_ms=snapshot.policy.reconnect_backoff.initial_delay_ms,
        )
        return new_snapshot, _logs_last(
            (_log(new_snapshot, event, "authenticated"),)
            + _state_changed(snapshot, new_snapshot, event, "authenticated")
        )

    if isinstance(event, Ready):
        if snapshot.state not in _HANDSHAKE_STATES:
            return _ignore(snapshot, event, f"ready_in_{snapshot.state.value.lower()}")

        new_snapshot = replace(
            snapshot,
            state=ConnectionState.READY,
            reconnect_attempt=reset_attempt(),
            reconnect_delay_ms=snapshot.policy.reconnect_backoff.initial_delay_ms,
            last_error=None,
        )
        return new_snapshot, _logs_last(
            (_log(new_snapshot, event, "ready"),)
            + _state_changed(snapshot, new_snapshot, event, "ready")
        )

    if isinstance(event, SessionUpdated):
        return snapshot, (
            SaveSession(generation=event.generation, blob=event.blob),
            _log(snapshot, event, "session_updated"),
        )

    if isinstance(event, RemoteSessionSaved):
        return snapshot, (_log(snapshot, event, "remote_session_saved"),)

    if isinstance(event, Disconnected):
        prev_state = snapshot.state
        torn_down = replace(
            snapshot,
            state=(
                ConnectionState.ERROR
                if prev_state is ConnectionState.ERROR
                else ConnectionState.DISCONNECTED
            ),
            client_present=False,
        )
        cmds: tuple[Command, ...] = (
            DestroyClient(generation=snapshot.generation, reason="disconnected"),
            _log(
                torn_down,
                event,
                "disconnected",
                {"reason": event.reason, "from_state": prev_state.value},
                level="warning",
            ),
        )

        # Only a drop from READY auto-reconnects; handshake or error drops
        # are left to the watchdog or the operator.
        if prev_state is ConnectionState.READY:
            new_snapshot, reconnect_cmds = _schedule_reconnect(torn_down, event)
            cmds = cmds + reconnect_cmds
        else:
            new_snapshot = torn_down
            cmds = cmds + (
                _log(
                    new_snapshot,
                    event,
                    "reconnect_not_scheduled",
                    {"from_state": prev_state.value},
                    level="warning",
                ),
            )

        return new_snapshot, _logs_last(
            cmds + _state_changed(snapshot, new_snapshot, event, "disconnected")
        )

    if isinstance(event, AuthFailure):
        new_snapshot = replace(
            snapshot,
            state=ConnectionState.ERROR,
            client_present=False,
            reconnect_pending=False,
            last_error=f"auth_failure:{event.message}",
        )
        return new_snapshot, _logs_last(
            _teardown(snapshot, reason="auth_failure")
            + (DeleteSession(reason="auth_failure"),)
            + (
                _log(
                    new_snapshot,
                    event,
                    "auth_failure",
                    {"message": event.message},
                    level="error",
                ),
            )
            + _state_changed(snapshot, new_snapshot, event, "auth_failure")
        )

    if isinstance(event, ClientFault):
        new_snapshot = replace(
            snapshot,
            state=ConnectionState.ERROR,
            last_error=event.reason,
        )
        return new_snapshot, _logs_last(
            (
                _log(
                    new_snapshot,
                    event,
                    "client_fault",
                    {"reason": event.reason},
                    level="error",
                ),
            )
            + _state_changed(snapshot, new_snapshot, event, "client_fault")
        )

    if isinstance(event, InitFailed):
        torn_down = replace(
            snapshot,
            client_present=False,
            last_error=f"init_failed:{event.reason}",
        )
        cmds = (
            DestroyClient(generation=snapshot.generation, reason="init_failed"),
            _log(torn_down, event, "init_failed", {"reason": event.reason}, level="error"),
        )

        if snapshot.policy.retry_on_init_failure:
            new_snapshot, reconnect_cmds = _schedule_reconnect(
                replace(torn_down, state=ConnectionState.DISCONNECTED),
                event,
            )
            cmds = cmds + reconnect_cmds
        else:
            new_snapshot = replace(torn_down, state=ConnectionState.ERROR)

        return new_snapshot, _logs_last(
            cmds + _state_changed(snapshot, new_snapshot, event, "init_failed")
        )

    return _ignore(snapshot, event, "unhandled_event", level="warning")
