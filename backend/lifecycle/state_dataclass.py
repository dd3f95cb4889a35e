"""
Authoritative connection lifecycle state container.

Rules:
- This dataclass is a pure data model.
- It contains ALL state the reducer may ever need.
- No behavior, no helpers, no derived logic.
"""
from __future__ import annotations

from dataclasses import dataclass, field

from constants import INITIAL_RECONNECT_DELAY_MS, MAX_RECONNECT_DELAY_MS
from lifecycle.enums.state import ConnectionState
from lifecycle.retry import BackoffPolicy, RetryAttempt


# =============================================================================
# Policy
# =============================================================================

@dataclass(frozen=True)
class LifecyclePolicy:
    """
    Process-configured knobs the reducer consults.

    watchdog_respects_error:
        When True a watchdog probe never restarts a connection in ERROR;
        only an operator restart or a process restart resumes it.
    retry_on_init_failure:
        When True an initialize() failure schedules a backoff reconnect
        instead of parking in ERROR.
    """
    reconnect_backoff: BackoffPolicy = field(
        default_factory=lambda: BackoffPolicy(
            initial_delay_ms=INITIAL_RECONNECT_DELAY_MS,
            max_delay_ms=MAX_RECONNECT_DELAY_MS,
        )
    )
    watchdog_respects_error: bool = True
    retry_on_init_failure: bool = False


# =============================================================================
# Connection Snapshot
# =============================================================================

@dataclass(frozen=True)
class ConnectionSnapshot:
    """Immutable snapshot of all lifecycle-owned state."""

    # ------------------------------------------------------------------
    # Control state
    # ------------------------------------------------------------------
    state: ConnectionState = ConnectionState.DISCONNECTED

    # ------------------------------------------------------------------
    # Connection instance tracking
    # ------------------------------------------------------------------
    # Monotonic; bumped on every CreateClient, never reused.
    # 0 means no instance has ever been created.
    generation: int = 0

    # True between CreateClient and DestroyClient for `generation`
    client_present: bool = False

    # ------------------------------------------------------------------
    # Reconnect bookkeeping
    # ------------------------------------------------------------------
    reconnect_attempt: RetryAttempt = RetryAttempt(attempt=0)
    reconnect_delay_ms: int = INITIAL_RECONNECT_DELAY_MS
    reconnect_pending: bool = False

    # ------------------------------------------------------------------
    # Terminal / error handling
    # ------------------------------------------------------------------
    shutting_down: bool = False
    last_error: str | None = None

    policy: LifecyclePolicy = field(default_factory=LifecyclePolicy)
