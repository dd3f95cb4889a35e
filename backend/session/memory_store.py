"""
In-process session store.

Used for local runs (SESSION_STORE=memory) and as the test double for
the remote store. Credentials do not survive a process restart.
"""

from __future__ import annotations

import copy
from typing import Any

from observability.logger import log_event


class InMemorySessionStore:
    """Dict-backed SessionStoreProtocol implementation."""

    def __init__(self, initial: dict[str, dict[str, Any]] | None = None) -> None:
        self._records: dict[str, dict[str, Any]] = dict(initial or {})

    async def exists(self, session_id: str) -> bool:
        return session_id in self._records

    async def extract(self, session_id: str) -> dict[str, Any] | None:
        blob = self._records.get(session_id)
        return copy.deepcopy(blob) if blob is not None else None

    async def save(self, session_id: str, blob: dict[str, Any]) -> bool:
        self._records[session_id] = copy.deepcopy(blob)
        log_event({
            "event_type": "SESSION_SAVED",
            "session_id": session_id,
            "store": "memory",
        })
        return True

    async def delete(self, session_id: str) -> bool:
        self._records.pop(session_id, None)
        log_event({
            "event_type": "SESSION_DELETED",
            "session_id": session_id,
            "store": "memory",
        })
        return True

    async def aclose(self) -> None:
        return None
