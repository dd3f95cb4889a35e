"""
Messaging adapter contract.

This module defines the *data shapes only* that cross the adapter
boundary. The instance lifecycle contract itself lives in
lifecycle.runtime_context.MessagingClientProtocol.

Key invariants:
- Generations are owned by ConnectionManager. Adapters tag every event
  with the generation they were built for and never change it.
- The adapter emits lifecycle events; it does not call the reducer or
  make state transitions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable


@dataclass(frozen=True)
class QuotedMessage:
    """The message an incoming message replied to."""
    message_id: str
    body: str


QuotedFetcher = Callable[[], Awaitable["QuotedMessage | None"]]


@dataclass(frozen=True)
class IncomingMessage:
    """
    One message received by the live connection.

    `fetch_quoted` resolves the replied-to message lazily; it is only
    set when `has_quoted` is True and may raise on transport errors.
    """
    message_id: str
    chat_id: str
    author: str
    body: str
    timestamp_s: int
    has_quoted: bool = False
    fetch_quoted: QuotedFetcher | None = field(default=None, compare=False, repr=False)


class BridgeError(RuntimeError):
    """Base error raised by the messaging bridge adapter."""


class BridgeRequestError(BridgeError):
    """The bridge answered a request with an error."""


class BridgeClosedError(BridgeError):
    """The bridge connection closed before a request completed."""
