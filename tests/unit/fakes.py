# pylint: disable=missing-module-docstring,missing-function-docstring,missing-class-docstring
from __future__ import annotations

import asyncio
import json
from typing import Any

from lifecycle.events import EventType, Ready
from lifecycle.runtime_context import ClientBinding


class FakeClient:
    """In-memory MessagingClientProtocol; records calls into a shared journal."""

    def __init__(
        self,
        binding: ClientBinding,
        journal: list[tuple[str, int]],
        *,
        fail_init: bool = False,
        fail_destroy: bool = False,
        status: str = "CONNECTED",
        auto_ready: bool = False,
    ) -> None:
        self.binding = binding
        self.journal = journal
        self.fail_init = fail_init
        self.fail_destroy = fail_destroy
        self.status: str | Exception = status
        self.auto_ready = auto_ready
        self.initialized = False
        self.destroyed = False
        self.sent: list[tuple[str, str]] = []
        self.send_error: Exception | None = None

    async def initialize(self) -> None:
        self.journal.append(("initialize", self.binding.generation))
        if self.fail_init:
            raise RuntimeError("browser failed to launch")
        self.initialized = True
        if self.auto_ready:
            await self.binding.emit_event(
                Ready(event_type=EventType.READY, ts_ms=0, generation=self.binding.generation)
            )

    async def destroy(self) -> None:
        self.journal.append(("destroy", self.binding.generation))
        self.destroyed = True
        if self.fail_destroy:
            raise RuntimeError("destroy blew up")

    async def get_state(self) -> str:
        if isinstance(self.status, Exception):
            raise self.status
        return self.status

    async def send_message(self, chat_id: str, text: str) -> str:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((chat_id, text))
        return f"MSG{len(self.sent)}"

    async def emit(self, event: Any) -> None:
        await self.binding.emit_event(event)


class FakeFactory:
    """ClientFactory that hands out FakeClients and remembers them."""

    def __init__(self, **client_kwargs: Any) -> None:
        self.client_kwargs = client_kwargs
        self.created: list[FakeClient] = []
        self.journal: list[tuple[str, int]] = []
        self.fail_next_kwargs: list[dict[str, Any]] = []

    def __call__(self, binding: ClientBinding) -> FakeClient:
        kwargs = dict(self.client_kwargs)
        if self.fail_next_kwargs:
            kwargs.update(self.fail_next_kwargs.pop(0))
        self.journal.append(("create", binding.generation))
        client = FakeClient(binding, self.journal, **kwargs)
        self.created.append(client)
        return client

    @property
    def latest(self) -> FakeClient:
        return self.created[-1]


class LogCapture:
    """Patchable replacement for observability.logger._print."""

    def __init__(self) -> None:
        self.lines: list[dict[str, Any]] = []

    def __call__(self, line: str) -> None:
        self.lines.append(json.loads(line))

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [r for r in self.lines if r.get("event_type") == event_type]

    def decisions(self) -> list[str]:
        return [r["decision"] for r in self.lines if "decision" in r]


async def settle(rounds: int = 10) -> None:
    """Let queued tasks (init, hand-offs) run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def drop_message(_message: Any) -> None:
    return None
