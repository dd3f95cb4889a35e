"""
Webhook delivery with bounded retries.

Contract:
- At most `max_attempts` POSTs per payload, exponential backoff between them
- Oversized payloads are dropped before any attempt
- Never raises to the caller; every outcome is logged and returned
- No persistent queue: undelivered payloads are logged in full for
  manual recovery and then forgotten
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from constants import (
    WEBHOOK_MAX_ATTEMPTS,
    WEBHOOK_RETRY_INITIAL_DELAY_MS,
    WEBHOOK_RETRY_MAX_DELAY_MS,
    WEBHOOK_TIMEOUT_S,
)
from delivery.payload import (
    OutboundEvent,
    PayloadLimits,
    serialize_payload,
    shape_payload,
)
from lifecycle.retry import (
    BackoffPolicy,
    RetryAttempt,
    get_retry_delay_ms,
    next_attempt,
    should_retry,
)
from observability.logger import log_event
from observability.metrics import timed


SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class DeliveryAttempt:
    """Outcome of one POST. Transient; never persisted."""
    index: int
    ok: bool
    status_code: int | None = None
    error: str | None = None


@dataclass(frozen=True)
class DeliveryResult:
    """What happened to one payload."""
    delivered: bool
    attempts: tuple[DeliveryAttempt, ...] = ()
    dropped_reason: str | None = None


class WebhookSender:
    """
    Sends OutboundEvents to one webhook URL.

    Design:
    - One shared httpx.AsyncClient, fixed per-request timeout
    - Retry loop carries an immutable RetryAttempt; delay and stop
      decisions come from lifecycle.retry
    - `sleep` is injectable so tests do not wait
    """

    def __init__(
        self,
        *,
        url: str | None,
        session_id: str,
        limits: PayloadLimits | None = None,
        policy: BackoffPolicy | None = None,
        timeout_s: float = WEBHOOK_TIMEOUT_S,
        client: httpx.AsyncClient | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._url = url
        self._session_id = session_id
        self._limits = limits or PayloadLimits()
        self._policy = policy or BackoffPolicy(
            initial_delay_ms=WEBHOOK_RETRY_INITIAL_DELAY_MS,
            max_delay_ms=WEBHOOK_RETRY_MAX_DELAY_MS,
            max_attempts=WEBHOOK_MAX_ATTEMPTS,
        )
        self._http = client or httpx.AsyncClient(timeout=timeout_s)
        self._timeout_s = timeout_s
        self._sleep = sleep

    @property
    def configured(self) -> bool:
        return bool(self._url)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def send(self, event: OutboundEvent) -> DeliveryResult:
        """
        Shape, size-check and deliver one event.

        Returns a DeliveryResult; never raises.
        """
        payload = shape_payload(event, self._limits)
        body = serialize_payload(payload)

        if not self._url:
            log_event({
                "event_type": "WEBHOOK_URL_NOT_SET",
                "session_id": self._session_id,
                "message_id": event.message_id,
            }, level="error")
            return DeliveryResult(delivered=False, dropped_reason="webhook_url_not_set")

        if len(body) > self._limits.max_payload_bytes:
            log_event({
                "event_type": "WEBHOOK_PAYLOAD_TOO_LARGE",
                "session_id": self._session_id,
                "message_id": event.message_id,
                "size_bytes": len(body),
                "max_bytes": self._limits.max_payload_bytes,
            }, level="error")
            return DeliveryResult(delivered=False, dropped_reason="payload_too_large")

        return await self._deliver(payload, body, message_id=event.message_id)

    async def _deliver(
        self,
        payload: dict[str, Any],
        body: bytes,
        *,
        message_id: str,
    ) -> DeliveryResult:
        attempts: list[DeliveryAttempt] = []
        failures = RetryAttempt(attempt=0)
        max_attempts = self._policy.max_attempts

        while True:
            index = failures.attempt
            log_event({
                "event_type": "WEBHOOK_ATTEMPT",
                "session_id": self._session_id,
                "message_id": message_id,
                "attempt": index + 1,
                "max_attempts": max_attempts,
            }, level="debug")

            outcome = await self._post_once(body, index=index, message_id=message_id)
            attempts.append(outcome)

            if outcome.ok:
                log_event({
                    "event_type": "WEBHOOK_DELIVERED",
                    "session_id": self._session_id,
                    "message_id": message_id,
                    "attempt": index + 1,
                })
                return DeliveryResult(delivered=True, attempts=tuple(attempts))

            failures = next_attempt(failures)
            if not should_retry(self._policy, failures):
                break

            delay_ms = get_retry_delay_ms(self._policy, RetryAttempt(attempt=index))
            log_event({
                "event_type": "WEBHOOK_RETRY_SCHEDULED",
                "session_id": self._session_id,
                "message_id": message_id,
                "next_attempt": failures.attempt + 1,
                "delay_s": delay_ms / 1000.0,
            })
            await self._sleep(delay_ms / 1000.0)

        log_event({
            "event_type": "WEBHOOK_DELIVERY_FAILED",
            "session_id": self._session_id,
            "message_id": message_id,
            "attempts": len(attempts),
            "last_error": attempts[-1].error,
            "payload": payload,
        }, level="error")
        return DeliveryResult(delivered=False, attempts=tuple(attempts))

    async def _post_once(self, body: bytes, *, index: int, message_id: str) -> DeliveryAttempt:
        assert self._url is not None
        try:
            with timed(
                "webhook_attempt",
                session_id=self._session_id,
                details={"message_id": message_id, "attempt": index + 1},
            ) as info:
                response = await self._http.post(
                    self._url,
                    content=body,
                    headers={"content-type": "application/json"},
                    timeout=self._timeout_s,
                )
                info["status_code"] = response.status_code
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            error = f"HTTP {exc.response.status_code}"
            self._log_attempt_error(message_id, index, error)
            return DeliveryAttempt(
                index=index,
                ok=False,
                status_code=exc.response.status_code,
                error=error,
            )
        except (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError) as exc:
            error = f"{type(exc).__name__}: {exc}"
            self._log_attempt_error(message_id, index, error)
            return DeliveryAttempt(index=index, ok=False, error=error)

        return DeliveryAttempt(index=index, ok=True, status_code=response.status_code)

    def _log_attempt_error(self, message_id: str, index: int, error: str) -> None:
        log_event({
            "event_type": "WEBHOOK_ATTEMPT_FAILED",
            "session_id": self._session_id,
            "message_id": message_id,
            "attempt": index + 1,
            "error": error,
        }, level="warning")
