"""
Websocket bridge messaging adapter.

The messaging library itself runs in a sidecar process. This adapter
holds one websocket to that sidecar per connection instance and speaks
a small JSON frame protocol with it.

Outbound frames:
    {"type": "init", "session_id": str, "session": object | null}
    {"type": "request", "request_id": str, "method": str, "params": object}

Inbound frames:
    {"type": "qr", "data": str}                  -> CredentialChallenge
    {"type": "authenticated"}                    -> Authenticated
    {"type": "ready"}                            -> Ready
    {"type": "session", "data": object}          -> SessionUpdated
    {"type": "disconnected", "reason": str}      -> Disconnected
    {"type": "auth_failure", "message": str}     -> AuthFailure
    {"type": "error", "error": str}              -> ClientFault
    {"type": "message", "message": object}       -> on_message(IncomingMessage)
    {"type": "response", "request_id": str, "ok": bool,
     "result": any, "error": str}                -> resolves a pending request

Request methods: get_state, send_message, get_quoted.

Design constraints:
- Adapter must not call the reducer or own lifecycle state.
- Every lifecycle event carries the generation this instance was built for.
- Events and messages are handed off as tasks so the receive loop never
  blocks on lifecycle processing (which may be destroying this very
  instance).
- Closing the socket is the teardown signal for the sidecar.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from functools import partial
from typing import Any

from websockets.asyncio.client import ClientConnection, connect as ws_connect
from websockets.exceptions import ConnectionClosed

from adapters.messaging.base import (
    BridgeClosedError,
    BridgeRequestError,
    IncomingMessage,
    QuotedMessage,
)
from constants import BRIDGE_MAX_FRAME_BYTES, BRIDGE_REQUEST_TIMEOUT_S
from lifecycle.events import (
    AuthFailure,
    Authenticated,
    ClientFault,
    CredentialChallenge,
    Disconnected,
    Event,
    EventType,
    Ready,
    SessionUpdated,
)
from lifecycle.runtime_context import ClientBinding, ClientFactory
from observability.logger import log_event


def _now_ms() -> int:
    return int(time.time() * 1000)


def _parse_timestamp_s(raw: Any) -> int:
    """Epoch seconds from the frame; receive time when missing or malformed."""
    try:
        return int(raw) if raw else int(time.time())
    except (TypeError, ValueError, OverflowError):
        return int(time.time())


class WebsocketBridgeClient:
    """
    MessagingClientProtocol over a websocket to the messaging sidecar.

    Lifecycle:
    - initialize(): connect, send init (with any restored session), start
      the receive loop
    - destroy(): stop the receive loop, close the socket, fail pending
      requests; idempotent
    - An unexpected socket close is reported as Disconnected
    """

    def __init__(
        self,
        *,
        binding: ClientBinding,
        url: str,
        token: str | None = None,
        request_timeout_s: float = BRIDGE_REQUEST_TIMEOUT_S,
    ) -> None:
        self._binding = binding
        self._url = url
        self._token = token
        self._request_timeout_s = request_timeout_s

        self._ws: ClientConnection | None = None
        self._recv_task: asyncio.Task[None] | None = None
        self._pending: dict[str, asyncio.Future[Any]] = {}
        self._handoffs: set[asyncio.Task[None]] = set()
        self._closing = False

    @property
    def generation(self) -> int:
        return self._binding.generation

    # -------------------------------------------------------------------------
    # MessagingClientProtocol
    # -------------------------------------------------------------------------

    async def initialize(self) -> None:
        headers = {"authorization": f"Bearer {self._token}"} if self._token else None

        ws = await ws_connect(
            self._url,
            additional_headers=headers,
            max_size=BRIDGE_MAX_FRAME_BYTES,
        )
        if self._closing:
            # destroy() raced the handshake
            await ws.close()
            return

        self._ws = ws
        await ws.send(json.dumps({
            "type": "init",
            "session_id": self._binding.session_id,
            "session": self._binding.session,
        }))

        log_event({
            "event_type": "BRIDGE_CONNECTED",
            "session_id": self._binding.session_id,
            "generation": self.generation,
            "restored_session": self._binding.session is not None,
        })

        self._recv_task = asyncio.create_task(self._recv_loop(ws))

    async def destroy(self) -> None:
        self._closing = True

        task = self._recv_task
        self._recv_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        ws = self._ws
        self._ws = None
        self._fail_pending("instance destroyed")

        if ws is not None:
            await ws.close()

    async def get_state(self) -> str:
        result = await self._request("get_state", {})
        return str(result)

    async def send_message(self, chat_id: str, text: str) -> str:
        result = await self._request("send_message", {"chat_id": chat_id, "text": text})
        if isinstance(result, dict):
            return str(result.get("id", ""))
        return str(result)

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    async def _request(self, method: str, params: dict[str, Any]) -> Any:
        ws = self._ws
        if ws is None or self._closing:
            raise BridgeClosedError(f"bridge not connected ({method})")

        request_id = uuid.uuid4().hex
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        try:
            await ws.send(json.dumps({
                "type": "request",
                "request_id": request_id,
                "method": method,
                "params": params,
            }))
            return await asyncio.wait_for(future, timeout=self._request_timeout_s)
        except ConnectionClosed as exc:
            raise BridgeClosedError(f"bridge closed during {method}: {exc}") from exc
        finally:
            self._pending.pop(request_id, None)

    async def _fetch_quoted(self, message_id: str) -> QuotedMessage | None:
        result = await self._request("get_quoted", {"message_id": message_id})
        if not isinstance(result, dict):
            return None
        return QuotedMessage(
            message_id=str(result.get("id") or ""),
            body=str(result.get("body") or ""),
        )

    def _fail_pending(self, reason: str) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(BridgeClosedError(reason))

    # -------------------------------------------------------------------------
    # Receive loop
    # -------------------------------------------------------------------------

    async def _recv_loop(self, ws: ClientConnection) -> None:
        reason = "bridge_closed"
        try:
            async for raw in ws:
                try:
                    self._handle_frame(raw)
                except Exception as exc:  # pylint: disable=broad-exception-caught
                    self._log_bad_frame(f"handler_error: {type(exc).__name__}: {exc}")
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as exc:
            reason = f"bridge_closed: {exc}"

        self._fail_pending(reason)
        if self._closing:
            return

        log_event({
            "event_type": "BRIDGE_CLOSED",
            "session_id": self._binding.session_id,
            "generation": self.generation,
            "reason": reason,
        }, level="warning")
        self._emit(
            Disconnected(
                event_type=EventType.DISCONNECTED,
                ts_ms=_now_ms(),
                generation=self.generation,
                reason=reason,
            )
        )

    def _handle_frame(self, raw: str | bytes) -> None:  # pylint: disable=too-many-branches
        try:
            frame = json.loads(raw)
        except ValueError as exc:
            self._log_bad_frame(f"invalid_json: {exc}")
            return
        if not isinstance(frame, dict):
            self._log_bad_frame("not_an_object")
            return

        frame_type = frame.get("type")
        generation = self.generation
        ts_ms = _now_ms()

        if frame_type == "response":
            self._resolve(frame)

        elif frame_type == "qr":
            self._emit(CredentialChallenge(
                event_type=EventType.CREDENTIAL_CHALLENGE,
                ts_ms=ts_ms,
                generation=generation,
                challenge=str(frame.get("data") or ""),
            ))

        elif frame_type == "authenticated":
            self._emit(Authenticated(
                event_type=EventType.AUTHENTICATED,
                ts_ms=ts_ms,
                generation=generation,
            ))

        elif frame_type == "ready":
            self._emit(Ready(
                event_type=EventType.READY,
                ts_ms=ts_ms,
                generation=generation,
            ))

        elif frame_type == "session":
            blob = frame.get("data")
            if not isinstance(blob, dict):
                self._log_bad_frame("session_data_not_an_object")
                return
            self._emit(SessionUpdated(
                event_type=EventType.SESSION_UPDATED,
                ts_ms=ts_ms,
                generation=generation,
                blob=blob,
            ))

        elif frame_type == "disconnected":
            self._emit(Disconnected(
                event_type=EventType.DISCONNECTED,
                ts_ms=ts_ms,
                generation=generation,
                reason=frame.get("reason"),
            ))

        elif frame_type == "auth_failure":
            self._emit(AuthFailure(
                event_type=EventType.AUTH_FAILURE,
                ts_ms=ts_ms,
                generation=generation,
                message=frame.get("message"),
            ))

        elif frame_type == "error":
            self._emit(ClientFault(
                event_type=EventType.CLIENT_FAULT,
                ts_ms=ts_ms,
                generation=generation,
                reason=str(frame.get("error") or "unknown"),
            ))

        elif frame_type == "message":
            message = self._parse_message(frame.get("message"))
            if message is None:
                self._log_bad_frame("message_not_an_object")
                return
            self._handoff(self._binding.on_message(message))

        else:
            log_event({
                "event_type": "BRIDGE_FRAME_UNKNOWN",
                "session_id": self._binding.session_id,
                "generation": generation,
                "frame_type": frame_type,
            }, level="debug")

    def _resolve(self, frame: dict[str, Any]) -> None:
        future = self._pending.get(str(frame.get("request_id")))
        if future is None or future.done():
            return
        if frame.get("ok"):
            future.set_result(frame.get("result"))
        else:
            future.set_exception(BridgeRequestError(str(frame.get("error") or "request failed")))

    def _parse_message(self, data: Any) -> IncomingMessage | None:
        if not isinstance(data, dict):
            return None

        message_id = str(data.get("id") or "")
        has_quoted = bool(data.get("has_quoted"))
        chat_id = str(data.get("chat_id") or "")

        return IncomingMessage(
            message_id=message_id,
            chat_id=chat_id,
            author=str(data.get("author") or chat_id),
            body=str(data.get("body") or ""),
            timestamp_s=_parse_timestamp_s(data.get("timestamp")),
            has_quoted=has_quoted,
            fetch_quoted=partial(self._fetch_quoted, message_id) if has_quoted else None,
        )

    # -------------------------------------------------------------------------
    # Hand-off helpers
    # -------------------------------------------------------------------------

    def _emit(self, event: Event) -> None:
        self._handoff(self._binding.emit_event(event))

    def _handoff(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._handoffs.add(task)
        task.add_done_callback(self._handoffs.discard)

    def _log_bad_frame(self, reason: str) -> None:
        log_event({
            "event_type": "BRIDGE_FRAME_INVALID",
            "session_id": self._binding.session_id,
            "generation": self.generation,
            "reason": reason,
        }, level="warning")


def build_bridge_client_factory(
    *,
    url: str,
    token: str | None = None,
    request_timeout_s: float = BRIDGE_REQUEST_TIMEOUT_S,
) -> ClientFactory:
    """ClientFactory that builds one WebsocketBridgeClient per generation."""

    def _factory(binding: ClientBinding) -> WebsocketBridgeClient:
        return WebsocketBridgeClient(
            binding=binding,
            url=url,
            token=token,
            request_timeout_s=request_timeout_s,
        )

    return _factory
