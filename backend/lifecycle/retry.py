"""
Backoff and retry policy helpers.

Purpose:
- One exponential backoff formula shared by reconnection and
  webhook delivery, each with its own BackoffPolicy
- Keep the reducer and the delivery loop free of delay arithmetic

This module contains NO timers, NO async, NO side effects.
"""
from __future__ import annotations

from dataclasses import dataclass


# =============================================================================
# Retry State
# =============================================================================

@dataclass(frozen=True)
class RetryAttempt:
    """
    Immutable attempt counter.

    Semantics:
    - attempt == 0 means no failure has been recorded yet.
    - Each recorded failure (disconnect, failed delivery) advances it by one.
    """
    attempt: int = 0


def next_attempt(current: RetryAttempt) -> RetryAttempt:
    """Return a new RetryAttempt with attempt incremented by 1."""
    return RetryAttempt(attempt=current.attempt + 1)


def reset_attempt() -> RetryAttempt:
    """Returns a fresh attempt counter."""
    return RetryAttempt(attempt=0)


# =============================================================================
# Policy
# =============================================================================

@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential backoff parameters.

    initial_delay_ms: delay after the first failure (attempt 0)
    max_delay_ms: hard cap on any single delay
    max_attempts: total attempts allowed, including the first one;
        None means unbounded (reconnection)
    """
    initial_delay_ms: int
    max_delay_ms: int
    max_attempts: int | None = None


def backoff_delay_ms(attempt: int, initial_delay_ms: int, max_delay_ms: int) -> int:
    """
    delay = min(initial * 2^attempt, max)

    Non-decreasing in attempt. Negative attempts are treated as 0.
    """
    n = max(attempt, 0)
    # Stop doubling once past the cap; avoids huge ints for large n
    if initial_delay_ms <= 0:
        return 0
    if n >= max_delay_ms.bit_length():
        return max_delay_ms
    return min(initial_delay_ms * (2 ** n), max_delay_ms)


def get_retry_delay_ms(policy: BackoffPolicy, attempt: RetryAttempt) -> int:
    """Delay to wait after the failure counted by `attempt`."""
    return backoff_delay_ms(attempt.attempt, policy.initial_delay_ms, policy.max_delay_ms)


def should_retry(policy: BackoffPolicy, attempt: RetryAttempt) -> bool:
    """
    True if another attempt is allowed.

    attempt = number of attempts already made (1 after the first try)
    """
    if policy.max_attempts is None:
        return True
    return attempt.attempt < policy.max_attempts
