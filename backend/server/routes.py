"""
Route registration for the relay API.

Responsibilities:
- Define the status and operator HTTP endpoints
- Pass control requests through to ConnectionManager
- Pull dependencies from app.state
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from config import AppConfig
from constants import GROUP_CHAT_SUFFIX
from lifecycle.enums.state import ConnectionState
from lifecycle.errors import ClientNotReadyError, SendFailedError
from lifecycle.runtime import ConnectionManager
from observability.logger import log_event


def _failure(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


def _authorized(request: Request, config: AppConfig) -> bool:
    """Operator endpoints require X-API-Key only when ADMIN_API_KEY is set."""
    if not config.admin_api_key:
        return True
    return request.headers.get("x-api-key") == config.admin_api_key


def normalize_group_id(group_id: str) -> str:
    if group_id.endswith(GROUP_CHAT_SUFFIX):
        return group_id
    return f"{group_id}{GROUP_CHAT_SUFFIX}"


def register_routes(app: FastAPI) -> None:  # pylint: disable=too-many-statements
    """Register all routes on the FastAPI app."""

    @app.get("/")
    async def status() -> dict[str, Any]:  # pyright: ignore[reportUnusedFunction]
        config: AppConfig = app.state.config
        manager: ConnectionManager = app.state.manager
        snapshot = manager.state
        return {
            "status": "alive",
            "clientState": snapshot.state.value,
            "sessionId": config.session_id,
            "reconnectAttempts": snapshot.reconnect_attempt.attempt,
            "webhookUrlSet": config.webhook_url_set,
            "timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
        }

    @app.get("/health")
    async def health() -> dict[str, str]:  # pyright: ignore[reportUnusedFunction]
        manager: ConnectionManager = app.state.manager
        return {"status": "ok", "clientState": manager.state.state.value}

    @app.post("/send-message")
    async def send_message(request: Request) -> JSONResponse:  # pyright: ignore[reportUnusedFunction]
        config: AppConfig = app.state.config
        manager: ConnectionManager = app.state.manager

        if not _authorized(request, config):
            log_event({"event_type": "UNAUTHORIZED_REQUEST", "path": "/send-message"}, level="error")
            return _failure(401, "Unauthorized")

        state = manager.state.state
        if state is not ConnectionState.READY or manager.client is None:
            err = ClientNotReadyError(state)
            log_event({
                "event_type": "SEND_MESSAGE_REJECTED",
                "session_id": config.session_id,
                "state": state.value,
            }, level="warning")
            return _failure(503, str(err))

        try:
            body = await request.json()
        except ValueError:
            body = None

        group_id = body.get("groupId") if isinstance(body, dict) else None
        message = body.get("message") if isinstance(body, dict) else None
        if not isinstance(group_id, str) or not group_id or not isinstance(message, str) or not message:
            log_event({
                "event_type": "SEND_MESSAGE_INVALID",
                "session_id": config.session_id,
            }, level="warning")
            return _failure(400, "Missing groupId or message")

        chat_id = normalize_group_id(group_id)
        try:
            message_id = await manager.send_message(chat_id, message)
        except ClientNotReadyError as exc:
            return _failure(503, str(exc))
        except SendFailedError as exc:
            log_event({
                "event_type": "SEND_MESSAGE_FAILED",
                "session_id": config.session_id,
                "chat_id": chat_id,
                "error": str(exc),
            }, level="error")
            return _failure(500, str(exc) or "Failed to send message")

        log_event({
            "event_type": "SEND_MESSAGE_OK",
            "session_id": config.session_id,
            "chat_id": chat_id,
            "message_id": message_id,
        })
        return JSONResponse(status_code=200, content={"success": True, "messageId": message_id})

    @app.post("/clear-session")
    async def clear_session(request: Request) -> JSONResponse:  # pyright: ignore[reportUnusedFunction]
        config: AppConfig = app.state.config
        manager: ConnectionManager = app.state.manager

        if not _authorized(request, config):
            log_event({"event_type": "UNAUTHORIZED_REQUEST", "path": "/clear-session"}, level="error")
            return _failure(401, "Unauthorized")

        log_event({"event_type": "CLEAR_SESSION_REQUESTED", "session_id": config.session_id},
                  level="warning")
        await manager.clear_session()
        return JSONResponse(
            status_code=200,
            content={"success": True, "message": f"Session {config.session_id} cleared."},
        )

    @app.post("/restart")
    async def restart(request: Request) -> JSONResponse:  # pyright: ignore[reportUnusedFunction]
        config: AppConfig = app.state.config
        manager: ConnectionManager = app.state.manager

        if not _authorized(request, config):
            log_event({"event_type": "UNAUTHORIZED_REQUEST", "path": "/restart"}, level="error")
            return _failure(401, "Unauthorized")

        log_event({"event_type": "RESTART_REQUESTED_BY_OPERATOR", "session_id": config.session_id},
                  level="warning")
        await manager.restart()
        return JSONResponse(
            status_code=200,
            content={"success": True, "clientState": manager.state.state.value},
        )
