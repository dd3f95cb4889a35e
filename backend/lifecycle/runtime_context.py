"""
Runtime collaborator protocols.

Provides ConnectionManager with the capabilities it drives
(connection instances, credential storage) without binding it to
any concrete messaging library or storage backend.

This module contains:
- Narrow Protocols (capabilities, not implementations)
- Zero lifecycle logic
- Zero state mutation
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol, runtime_checkable

if TYPE_CHECKING:
    from adapters.messaging.base import IncomingMessage
    from lifecycle.events import Event


EventSink = Callable[["Event"], Awaitable[None]]
MessageSink = Callable[["IncomingMessage"], Awaitable[None]]


# ---------------------------------------------------------------------
# Connection instance
# ---------------------------------------------------------------------

@runtime_checkable
class MessagingClientProtocol(Protocol):
    """
    One live connection to the remote messaging endpoint.

    Contract:
    - initialize() connects and returns; lifecycle progress is reported
      through the EventSink the instance was built with
    - destroy() releases every resource; may raise, callers tolerate it
    - get_state() returns the transport's own status string
      ("CONNECTED" when live)
    - send_message() returns the remote message id or raises with the
      transport's error
    """

    async def initialize(self) -> None: ...
    async def destroy(self) -> None: ...
    async def get_state(self) -> str: ...
    async def send_message(self, chat_id: str, text: str) -> str: ...


@dataclass(frozen=True)
class ClientBinding:
    """Everything a factory needs to build one instance."""
    generation: int
    session_id: str
    session: dict[str, Any] | None
    emit_event: EventSink
    on_message: MessageSink


ClientFactory = Callable[[ClientBinding], MessagingClientProtocol]


# ---------------------------------------------------------------------
# Session store
# ---------------------------------------------------------------------

@runtime_checkable
class SessionStoreProtocol(Protocol):
    """
    Keyed credential storage.

    Every operation degrades instead of raising: lookups report
    "absent", writes report False.
    """

    async def exists(self, session_id: str) -> bool: ...
    async def extract(self, session_id: str) -> dict[str, Any] | None: ...
    async def save(self, session_id: str, blob: dict[str, Any]) -> bool: ...
    async def delete(self, session_id: str) -> bool: ...
    async def aclose(self) -> None: ...
