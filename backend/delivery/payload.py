"""
Outbound event model and payload shaping.

Rules:
- OutboundEvent is an immutable snapshot of one received message.
- Shaping is pure: truncation and size measurement only.
- The serialized bytes measured here are exactly the bytes sent.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from constants import (
    MAX_PAYLOAD_BYTES,
    REPLY_TEXT_LIMIT_CHARS,
    TEXT_LIMIT_CHARS,
    TRUNCATION_MARKER,
)


# =============================================================================
# Event model
# =============================================================================

@dataclass(frozen=True)
class QuotedReference:
    """The message an incoming message replied to."""
    message_id: str
    text: str


@dataclass(frozen=True)
class OutboundEvent:
    """Snapshot of a received group message, ready for delivery."""
    group_id: str
    sender_id: str
    message_id: str
    text: str
    timestamp: datetime
    reply: QuotedReference | None = None


@dataclass(frozen=True)
class PayloadLimits:
    """Character limits and serialized-size cap for one payload."""
    text_limit_chars: int = TEXT_LIMIT_CHARS
    reply_text_limit_chars: int = REPLY_TEXT_LIMIT_CHARS
    max_payload_bytes: int = MAX_PAYLOAD_BYTES
    truncation_marker: str = TRUNCATION_MARKER


# =============================================================================
# Shaping
# =============================================================================

def truncate_text(text: str, limit: int, marker: str = TRUNCATION_MARKER) -> str:
    """
    Cut text to exactly `limit` characters plus `marker`.

    Text at or under the limit is returned unchanged.
    """
    if len(text) <= limit:
        return text
    return text[:limit] + marker


def format_timestamp(ts: datetime) -> str:
    """ISO-8601 in UTC with millisecond precision and a Z suffix."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    utc = ts.astimezone(timezone.utc)
    return utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def shape_payload(event: OutboundEvent, limits: PayloadLimits) -> dict[str, Any]:
    """Build the webhook JSON body for `event`, truncating text fields."""
    reply_info: dict[str, str] | None = None
    if event.reply is not None:
        reply_info = {
            "message_id": event.reply.message_id,
            "text": truncate_text(
                event.reply.text,
                limits.reply_text_limit_chars,
                limits.truncation_marker,
            ),
        }

    return {
        "groupId": event.group_id,
        "senderId": event.sender_id,
        "text": truncate_text(event.text, limits.text_limit_chars, limits.truncation_marker),
        "messageId": event.message_id,
        "hasReply": event.reply is not None,
        "replyInfo": reply_info,
        "timestamp": format_timestamp(event.timestamp),
    }


def serialize_payload(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
