"""
FastAPI app factory.

Responsibilities:
- Create and configure FastAPI app
- Build shared resources (session store, webhook sender, connection
  manager, watchdog) inside the lifespan
- Start the connection on boot and shut it down gracefully
- Register routes
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from adapters.messaging.websocket_bridge import build_bridge_client_factory
from config import AppConfig
from constants import SHUTDOWN_GRACE_S
from delivery.payload import PayloadLimits
from delivery.sender import WebhookSender
from lifecycle.enums.source import StartSource
from lifecycle.enums.state import ConnectionState
from lifecycle.retry import BackoffPolicy
from lifecycle.runtime import ConnectionManager
from lifecycle.runtime_context import ClientFactory, SessionStoreProtocol
from lifecycle.state_dataclass import ConnectionSnapshot, LifecyclePolicy
from lifecycle.watchdog import Watchdog
from observability import logger
from observability.logger import log_event
from routing.router import EventRouter
from session.memory_store import InMemorySessionStore
from session.supabase_store import SupabaseSessionStore

from server.routes import register_routes


def create_app(
    config: AppConfig | None = None,
    *,
    store: SessionStoreProtocol | None = None,
    client_factory: ClientFactory | None = None,
    sender: WebhookSender | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Collaborators may be injected for tests; anything not injected is
    built from config when the lifespan starts.

    Raises:
        ConfigError if the configuration cannot produce a working process
    """
    config = config or AppConfig.load_from_env()
    config.validate()
    logger.configure(config.log_level)

    app = FastAPI(title="Messaging Relay", lifespan=_lifespan)

    app.state.config = config
    app.state.injected_store = store
    app.state.injected_client_factory = client_factory
    app.state.injected_sender = sender

    register_routes(app)

    return app


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    config: AppConfig = app.state.config

    store = app.state.injected_store or build_session_store(config)
    sender = app.state.injected_sender or build_webhook_sender(config)
    client_factory = app.state.injected_client_factory or build_bridge_client_factory(
        url=config.bridge_url,
        token=config.bridge_token,
    )

    manager: ConnectionManager | None = None

    def _current_state() -> ConnectionState:
        assert manager is not None
        return manager.state.state

    router = EventRouter(
        session_id=config.session_id,
        get_state=_current_state,
        sender=sender,
        keywords=config.forward_keywords,
    )

    manager = ConnectionManager(
        session_id=config.session_id,
        store=store,
        client_factory=client_factory,
        on_message=router.handle_message,
        initial_state=ConnectionSnapshot(
            reconnect_delay_ms=config.initial_reconnect_delay_ms,
            policy=build_lifecycle_policy(config),
        ),
    )
    watchdog = Watchdog(manager=manager, interval_s=config.watchdog_interval_s)

    app.state.store = store
    app.state.sender = sender
    app.state.manager = manager
    app.state.watchdog = watchdog

    log_event({
        "event_type": "APP_STARTING",
        "session_id": config.session_id,
        "session_store": config.session_store,
        "webhook_url_set": config.webhook_url_set,
        "watchdog_interval_s": config.watchdog_interval_s,
    })

    if not config.webhook_url_set:
        log_event({
            "event_type": "WEBHOOK_URL_NOT_SET",
            "session_id": config.session_id,
        }, level="warning")

    await manager.start(source=StartSource.BOOT)
    watchdog.start()

    try:
        yield
    finally:
        log_event({
            "event_type": "APP_SHUTTING_DOWN",
            "session_id": config.session_id,
            "state": manager.state.state.value,
        }, level="warning")

        await watchdog.stop()
        try:
            await asyncio.wait_for(manager.shutdown(), timeout=SHUTDOWN_GRACE_S)
        except asyncio.TimeoutError:
            log_event({
                "event_type": "SHUTDOWN_TIMEOUT",
                "session_id": config.session_id,
                "grace_s": SHUTDOWN_GRACE_S,
            }, level="error")

        await sender.aclose()
        await store.aclose()

        log_event({
            "event_type": "APP_STOPPED",
            "session_id": config.session_id,
        })


def build_session_store(config: AppConfig) -> SessionStoreProtocol:
    """Build the session store selected by SESSION_STORE."""
    if config.session_store == "memory":
        return InMemorySessionStore()

    assert config.supabase_url is not None and config.supabase_key is not None
    return SupabaseSessionStore(
        url=config.supabase_url,
        key=config.supabase_key,
        table=config.sessions_table,
    )


def build_webhook_sender(config: AppConfig) -> WebhookSender:
    return WebhookSender(
        url=config.webhook_url,
        session_id=config.session_id,
        limits=PayloadLimits(
            text_limit_chars=config.text_limit_chars,
            reply_text_limit_chars=config.reply_text_limit_chars,
            max_payload_bytes=config.max_payload_bytes,
        ),
        policy=BackoffPolicy(
            initial_delay_ms=config.webhook_retry_initial_delay_ms,
            max_delay_ms=config.webhook_retry_max_delay_ms,
            max_attempts=config.webhook_max_attempts,
        ),
        timeout_s=config.webhook_timeout_s,
    )


def build_lifecycle_policy(config: AppConfig) -> LifecyclePolicy:
    return LifecyclePolicy(
        reconnect_backoff=BackoffPolicy(
            initial_delay_ms=config.initial_reconnect_delay_ms,
            max_delay_ms=config.max_reconnect_delay_ms,
        ),
        watchdog_respects_error=config.watchdog_respects_error,
        retry_on_init_failure=config.retry_on_init_failure,
    )
