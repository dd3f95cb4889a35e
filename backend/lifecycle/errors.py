"""Errors surfaced by ConnectionManager to its callers."""

from __future__ import annotations

from lifecycle.enums.state import ConnectionState


class ClientNotReadyError(RuntimeError):
    """Outbound operation attempted while the connection is not READY."""

    def __init__(self, state: ConnectionState) -> None:
        super().__init__(f"Messaging client not ready (State: {state.value})")
        self.state = state


class SendFailedError(RuntimeError):
    """The connection instance rejected an outbound send; message is verbatim."""
