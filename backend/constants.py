"""
Behavioral constants.

Rules:
- If changing a value changes runtime behavior, it belongs here.
- These are defaults; AppConfig may override the tunable ones from env.
- No magic numbers elsewhere in the codebase.
"""

from __future__ import annotations

from typing import Final

# =============================================================================
# Reconnect Backoff
# =============================================================================

INITIAL_RECONNECT_DELAY_MS: Final[int] = 5_000
MAX_RECONNECT_DELAY_MS: Final[int] = 300_000

# =============================================================================
# Webhook Delivery
# =============================================================================

WEBHOOK_MAX_ATTEMPTS: Final[int] = 3
WEBHOOK_RETRY_INITIAL_DELAY_MS: Final[int] = 1_000
WEBHOOK_RETRY_MAX_DELAY_MS: Final[int] = 30_000
WEBHOOK_TIMEOUT_S: Final[float] = 10.0

# =============================================================================
# Payload Shaping
# =============================================================================

TEXT_LIMIT_CHARS: Final[int] = 1_000
REPLY_TEXT_LIMIT_CHARS: Final[int] = 500
TRUNCATION_MARKER: Final[str] = "... [truncated]"
MAX_PAYLOAD_BYTES: Final[int] = 90_000

# =============================================================================
# Watchdog
# =============================================================================

WATCHDOG_INTERVAL_S: Final[float] = 300.0
EXPECTED_LIVE_STATUS: Final[str] = "CONNECTED"
STATUS_QUERY_TIMEOUT_S: Final[float] = 10.0

# =============================================================================
# Messaging Identifiers
# =============================================================================

GROUP_CHAT_SUFFIX: Final[str] = "@g.us"
UNKNOWN_MESSAGE_ID: Final[str] = "UNKNOWN_ID"
CHALLENGE_CODE_URL: Final[str] = "https://api.qrserver.com/v1/create-qr-code/?data="

# =============================================================================
# Messaging Bridge
# =============================================================================

BRIDGE_REQUEST_TIMEOUT_S: Final[float] = 30.0
BRIDGE_MAX_FRAME_BYTES: Final[int] = 2**22

# =============================================================================
# Session Store
# =============================================================================

DEFAULT_SESSION_ID: Final[str] = "default_session"
DEFAULT_SESSIONS_TABLE: Final[str] = "whatsapp_sessions"
STORE_TIMEOUT_S: Final[float] = 10.0

# =============================================================================
# Process Lifecycle
# =============================================================================

SHUTDOWN_GRACE_S: Final[float] = 10.0
DEFAULT_PORT: Final[int] = 3000
