"""
Supabase-backed session store.

Persists credential blobs in a PostgREST table:

    session_key   text primary key
    session_data  jsonb

Every operation degrades instead of raising. The store is a cache of
convenience: losing it costs a credential handshake, never the live
connection.
"""

from __future__ import annotations

from typing import Any

import httpx

from constants import DEFAULT_SESSIONS_TABLE, STORE_TIMEOUT_S
from observability.logger import log_event
from observability.metrics import timed


def _supabase_headers(key: str) -> dict[str, str]:
    return {
        "apikey": key,
        "authorization": f"Bearer {key}",
        "content-type": "application/json",
    }


class SupabaseSessionStore:
    """SessionStoreProtocol over the Supabase REST API (httpx)."""

    def __init__(
        self,
        *,
        url: str,
        key: str,
        table: str = DEFAULT_SESSIONS_TABLE,
        timeout_s: float = STORE_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._table = table
        self._http = httpx.AsyncClient(
            base_url=f"{url.rstrip('/')}/rest/v1",
            headers=_supabase_headers(key),
            timeout=timeout_s,
            transport=transport,
        )

    # ------------------------------------------------------------------
    # SessionStoreProtocol
    # ------------------------------------------------------------------

    async def exists(self, session_id: str) -> bool:
        try:
            with timed("session_store_exists", session_id=session_id):
                response = await self._http.get(
                    f"/{self._table}",
                    params={
                        "select": "session_key",
                        "session_key": f"eq.{session_id}",
                        "limit": "1",
                    },
                )
                response.raise_for_status()
                rows = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            self._log_failure("exists", session_id, exc)
            return False

        exists = isinstance(rows, list) and len(rows) > 0
        log_event({
            "event_type": "SESSION_EXISTS_CHECKED",
            "session_id": session_id,
            "exists": exists,
        }, level="debug")
        return exists

    async def extract(self, session_id: str) -> dict[str, Any] | None:
        try:
            with timed("session_store_extract", session_id=session_id):
                response = await self._http.get(
                    f"/{self._table}",
                    params={
                        "select": "session_data",
                        "session_key": f"eq.{session_id}",
                        "limit": "1",
                    },
                )
                response.raise_for_status()
                rows = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            self._log_failure("extract", session_id, exc)
            return None

        row = rows[0] if isinstance(rows, list) and rows else None
        blob = row.get("session_data") if isinstance(row, dict) else None
        if not isinstance(blob, dict):
            log_event({
                "event_type": "SESSION_NOT_FOUND",
                "session_id": session_id,
            })
            return None

        log_event({
            "event_type": "SESSION_EXTRACTED",
            "session_id": session_id,
        })
        return blob

    async def save(self, session_id: str, blob: dict[str, Any]) -> bool:
        try:
            with timed("session_store_save", session_id=session_id):
                response = await self._http.post(
                    f"/{self._table}",
                    params={"on_conflict": "session_key"},
                    headers={"prefer": "resolution=merge-duplicates,return=minimal"},
                    json={"session_key": session_id, "session_data": blob},
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            self._log_failure("save", session_id, exc)
            return False

        log_event({
            "event_type": "SESSION_SAVED",
            "session_id": session_id,
            "store": "supabase",
        })
        return True

    async def delete(self, session_id: str) -> bool:
        try:
            with timed("session_store_delete", session_id=session_id):
                response = await self._http.delete(
                    f"/{self._table}",
                    params={"session_key": f"eq.{session_id}"},
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            self._log_failure("delete", session_id, exc)
            return False

        log_event({
            "event_type": "SESSION_DELETED",
            "session_id": session_id,
            "store": "supabase",
        })
        return True

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _log_failure(operation: str, session_id: str, exc: Exception) -> None:
        details: dict[str, Any] = {"error": f"{type(exc).__name__}: {exc}"}
        if isinstance(exc, httpx.HTTPStatusError):
            details["status_code"] = exc.response.status_code

        log_event({
            "event_type": "SESSION_STORE_ERROR",
            "session_id": session_id,
            "operation": operation,
            **details,
        }, level="error")
