"""
Connection watchdog.

Responsibilities:
- Periodically verify a connection instance exists and reports the
  expected live status
- Turn divergence into lifecycle events (start request / failed probe)

Non-responsibilities:
- Deciding whether a restart is allowed (reducer policy)
- Touching the instance reference directly

Event-driven disconnects are not always delivered by the transport
(silent partitions); this loop guarantees eventual recovery anyway.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING

from constants import EXPECTED_LIVE_STATUS, STATUS_QUERY_TIMEOUT_S
from lifecycle.enums.source import StartSource
from lifecycle.events import EventType, HealthCheckFailed

from observability.logger import log_event

if TYPE_CHECKING:
    from lifecycle.runtime import ConnectionManager


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


class Watchdog:
    """
    Fixed-interval health probe for ConnectionManager.

    Each tick is one of:
    - no instance          -> StartRequested(source=WATCHDOG)
    - status != expected   -> HealthCheckFailed(generation)
    - probe raised/timeout -> HealthCheckFailed(generation)
    - healthy              -> nothing

    Ticks never overlap: the next sleep starts after the previous
    check returns.
    """

    def __init__(
        self,
        *,
        manager: ConnectionManager,
        interval_s: float,
        expected_status: str = EXPECTED_LIVE_STATUS,
        probe_timeout_s: float = STATUS_QUERY_TIMEOUT_S,
    ) -> None:
        self._manager = manager
        self._interval_s = interval_s
        self._expected_status = expected_status
        self._probe_timeout_s = probe_timeout_s
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def check_once(self) -> None:
        """Run a single probe and feed the outcome to the manager."""
        manager = self._manager
        client = manager.client
        generation = manager.client_generation

        if client is None:
            log_event({
                "event_type": "WATCHDOG_NO_CLIENT",
                "session_id": manager.session_id,
                "state": manager.state.state.value,
            }, level="warning")
            await manager.start(source=StartSource.WATCHDOG)
            return

        try:
            status = await asyncio.wait_for(client.get_state(), timeout=self._probe_timeout_s)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            reason = f"status_check_failed: {type(exc).__name__}: {exc}"
        else:
            if status == self._expected_status:
                log_event({
                    "event_type": "WATCHDOG_HEALTHY",
                    "session_id": manager.session_id,
                    "generation": generation,
                }, level="debug")
                return
            reason = f"unexpected_status: {status}"

        log_event({
            "event_type": "WATCHDOG_UNHEALTHY",
            "session_id": manager.session_id,
            "generation": generation,
            "reason": reason,
        }, level="warning")

        await manager.handle_event(
            HealthCheckFailed(
                event_type=EventType.HEALTH_CHECK_FAILED,
                ts_ms=_now_ms(),
                generation=generation,
                reason=reason,
            )
        )

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval_s)
            try:
                await self.check_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pylint: disable=broad-exception-caught
                log_event({
                    "event_type": "WATCHDOG_TICK_FAILED",
                    "session_id": self._manager.session_id,
                    "error": f"{type(exc).__name__}: {exc}",
                }, level="error")
