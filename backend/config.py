"""
Application configuration.

Responsibilities:
- Load deployment-specific configuration
- Read environment variables
- Provide a typed, immutable config object

Non-responsibilities:
- No lifecycle logic
- No runtime mutation
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from constants import (
    DEFAULT_PORT,
    DEFAULT_SESSION_ID,
    DEFAULT_SESSIONS_TABLE,
    INITIAL_RECONNECT_DELAY_MS,
    MAX_PAYLOAD_BYTES,
    MAX_RECONNECT_DELAY_MS,
    REPLY_TEXT_LIMIT_CHARS,
    TEXT_LIMIT_CHARS,
    WATCHDOG_INTERVAL_S,
    WEBHOOK_MAX_ATTEMPTS,
    WEBHOOK_RETRY_INITIAL_DELAY_MS,
    WEBHOOK_RETRY_MAX_DELAY_MS,
    WEBHOOK_TIMEOUT_S,
)


class ConfigError(RuntimeError):
    """Raised when the process cannot start with the given environment."""


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_keywords(name: str) -> tuple[str, ...]:
    raw = os.environ.get(name, "")
    return tuple(k.strip().lower() for k in raw.split(",") if k.strip())


@dataclass(frozen=True)
class AppConfig:
    """
    Immutable application configuration.

    Constructed once at process startup and passed downward to
    the app factory, which wires store, sender, manager and watchdog.
    """

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    port: int = DEFAULT_PORT
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    session_id: str = DEFAULT_SESSION_ID
    session_store: str = "supabase"
    supabase_url: str | None = None
    supabase_key: str | None = None
    sessions_table: str = DEFAULT_SESSIONS_TABLE

    # ------------------------------------------------------------------
    # Messaging bridge
    # ------------------------------------------------------------------

    bridge_url: str = "ws://localhost:8765"
    bridge_token: str | None = None

    # ------------------------------------------------------------------
    # Webhook delivery
    # ------------------------------------------------------------------

    webhook_url: str | None = None
    webhook_max_attempts: int = WEBHOOK_MAX_ATTEMPTS
    webhook_retry_initial_delay_ms: int = WEBHOOK_RETRY_INITIAL_DELAY_MS
    webhook_retry_max_delay_ms: int = WEBHOOK_RETRY_MAX_DELAY_MS
    webhook_timeout_s: float = WEBHOOK_TIMEOUT_S
    text_limit_chars: int = TEXT_LIMIT_CHARS
    reply_text_limit_chars: int = REPLY_TEXT_LIMIT_CHARS
    max_payload_bytes: int = MAX_PAYLOAD_BYTES

    # Empty tuple means every group message is forwarded
    forward_keywords: tuple[str, ...] = ()

    # ------------------------------------------------------------------
    # Lifecycle policy
    # ------------------------------------------------------------------

    initial_reconnect_delay_ms: int = INITIAL_RECONNECT_DELAY_MS
    max_reconnect_delay_ms: int = MAX_RECONNECT_DELAY_MS
    watchdog_interval_s: float = WATCHDOG_INTERVAL_S
    watchdog_respects_error: bool = True
    retry_on_init_failure: bool = False

    # ------------------------------------------------------------------
    # Admin surface
    # ------------------------------------------------------------------

    admin_api_key: str | None = None

    @property
    def webhook_url_set(self) -> bool:
        return bool(self.webhook_url)

    def validate(self) -> None:
        """
        Raises:
            ConfigError if the selected session store cannot be built.
        """
        if self.session_store not in ("supabase", "memory"):
            raise ConfigError(f"Unknown SESSION_STORE: {self.session_store}")

        if self.session_store == "supabase" and not (self.supabase_url and self.supabase_key):
            raise ConfigError("Missing SUPABASE_URL or SUPABASE_KEY environment variables")

        if self.webhook_max_attempts < 1:
            raise ConfigError("WEBHOOK_MAX_ATTEMPTS must be at least 1")

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @staticmethod
    def load_from_env() -> AppConfig:
        """
        Load configuration from environment variables.

        Values not present in the environment keep the defaults
        from constants.py.
        """
        return AppConfig(
            port=int(os.environ.get("PORT", DEFAULT_PORT)),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),

            session_id=os.environ.get("SESSION_ID", DEFAULT_SESSION_ID),
            session_store=os.environ.get("SESSION_STORE", "supabase").strip().lower(),
            supabase_url=os.environ.get("SUPABASE_URL"),
            supabase_key=(
                os.environ.get("SUPABASE_KEY")
                or os.environ.get("SUPABASE_ANON_KEY")
            ),
            sessions_table=os.environ.get("SUPABASE_SESSIONS_TABLE", DEFAULT_SESSIONS_TABLE),

            bridge_url=os.environ.get("BRIDGE_URL", "ws://localhost:8765"),
            bridge_token=os.environ.get("BRIDGE_TOKEN"),

            webhook_url=os.environ.get("WEBHOOK_URL") or None,
            webhook_max_attempts=int(
                os.environ.get("WEBHOOK_MAX_ATTEMPTS", WEBHOOK_MAX_ATTEMPTS)
            ),
            webhook_retry_initial_delay_ms=int(
                os.environ.get("WEBHOOK_RETRY_INITIAL_DELAY_MS", WEBHOOK_RETRY_INITIAL_DELAY_MS)
            ),
            webhook_retry_max_delay_ms=int(
                os.environ.get("WEBHOOK_RETRY_MAX_DELAY_MS", WEBHOOK_RETRY_MAX_DELAY_MS)
            ),
            webhook_timeout_s=float(os.environ.get("WEBHOOK_TIMEOUT_S", WEBHOOK_TIMEOUT_S)),
            text_limit_chars=int(os.environ.get("TEXT_LIMIT_CHARS", TEXT_LIMIT_CHARS)),
            reply_text_limit_chars=int(
                os.environ.get("REPLY_TEXT_LIMIT_CHARS", REPLY_TEXT_LIMIT_CHARS)
            ),
            max_payload_bytes=int(os.environ.get("MAX_PAYLOAD_BYTES", MAX_PAYLOAD_BYTES)),
            forward_keywords=_env_keywords("FORWARD_KEYWORDS"),

            initial_reconnect_delay_ms=int(
                os.environ.get("INITIAL_RECONNECT_DELAY_MS", INITIAL_RECONNECT_DELAY_MS)
            ),
            max_reconnect_delay_ms=int(
                os.environ.get("MAX_RECONNECT_DELAY_MS", MAX_RECONNECT_DELAY_MS)
            ),
            watchdog_interval_s=float(
                os.environ.get("WATCHDOG_INTERVAL_S", WATCHDOG_INTERVAL_S)
            ),
            watchdog_respects_error=_env_bool("WATCHDOG_RESPECTS_ERROR", True),
            retry_on_init_failure=_env_bool("RETRY_ON_INIT_FAILURE", False),

            admin_api_key=os.environ.get("ADMIN_API_KEY") or None,
        )
