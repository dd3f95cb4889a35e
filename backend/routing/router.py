"""
Incoming-message routing.

Thin layer between the live connection and webhook delivery:
- Only group chats are forwarded
- Messages arriving while the connection is not READY are dropped
- Optional keyword filter over message text and quoted text
- Delivery outcome never propagates back into the connection
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Iterable

from adapters.messaging.base import IncomingMessage, QuotedMessage
from constants import GROUP_CHAT_SUFFIX, UNKNOWN_MESSAGE_ID
from delivery.payload import OutboundEvent, QuotedReference
from delivery.sender import DeliveryResult, WebhookSender
from lifecycle.enums.state import ConnectionState
from observability.logger import log_event


class EventRouter:
    """
    Decides whether an incoming message becomes an OutboundEvent.

    `get_state` is read-only access to the manager's current state.
    """

    def __init__(
        self,
        *,
        session_id: str,
        get_state: Callable[[], ConnectionState],
        sender: WebhookSender,
        keywords: Iterable[str] = (),
        group_suffix: str = GROUP_CHAT_SUFFIX,
    ) -> None:
        self._session_id = session_id
        self._get_state = get_state
        self._sender = sender
        self._keywords = tuple(k.lower() for k in keywords if k.strip())
        self._group_suffix = group_suffix

    async def handle_message(self, message: IncomingMessage) -> DeliveryResult | None:
        """
        Route one message. Returns the delivery result, or None when the
        message was not forwarded. Never raises.
        """
        if not message.chat_id.endswith(self._group_suffix):
            return None

        state = self._get_state()
        if state is not ConnectionState.READY:
            log_event({
                "event_type": "MESSAGE_DROPPED_NOT_READY",
                "session_id": self._session_id,
                "message_id": message.message_id or UNKNOWN_MESSAGE_ID,
                "state": state.value,
            }, level="warning")
            return None

        message_id = message.message_id or UNKNOWN_MESSAGE_ID

        try:
            log_event({
                "event_type": "MESSAGE_RECEIVED",
                "session_id": self._session_id,
                "group_id": message.chat_id,
                "sender_id": message.author,
                "message_id": message_id,
                "text_preview": message.body[:50],
            }, level="debug")

            quoted = await self._resolve_quoted(message, message_id)
            quoted_text = quoted.body if quoted is not None else ""

            if not self._matches(message.body, quoted_text):
                return None

            event = OutboundEvent(
                group_id=message.chat_id,
                sender_id=message.author or message.chat_id,
                message_id=message_id,
                text=message.body,
                timestamp=datetime.fromtimestamp(message.timestamp_s, tz=timezone.utc),
                reply=(
                    QuotedReference(message_id=quoted.message_id, text=quoted.body)
                    if quoted is not None else None
                ),
            )

            log_event({
                "event_type": "MESSAGE_FORWARDING",
                "session_id": self._session_id,
                "group_id": event.group_id,
                "sender_id": event.sender_id,
                "message_id": message_id,
                "has_reply": event.reply is not None,
            })
            return await self._sender.send(event)

        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "MESSAGE_HANDLING_FAILED",
                "session_id": self._session_id,
                "group_id": message.chat_id,
                "message_id": message_id,
                "error": f"{type(exc).__name__}: {exc}",
            }, level="error")
            return None

    async def _resolve_quoted(
        self,
        message: IncomingMessage,
        message_id: str,
    ) -> QuotedMessage | None:
        if not message.has_quoted or message.fetch_quoted is None:
            return None
        try:
            return await message.fetch_quoted()
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "QUOTED_MESSAGE_FETCH_FAILED",
                "session_id": self._session_id,
                "message_id": message_id,
                "error": f"{type(exc).__name__}: {exc}",
            }, level="warning")
            return None

    def _matches(self, text: str, quoted_text: str) -> bool:
        if not self._keywords:
            return True
        haystacks = (text.lower(), quoted_text.lower())
        return any(k in h for k in self._keywords for h in haystacks)
