"""
Runtime execution shell for the messaging connection.

Responsibilities:
- Own the lifecycle snapshot and the single connection-instance handle
- Call the pure reducer
- Execute commands with side effects (instances, session store, timers)
- Convert timer expiry into events

Non-responsibilities:
- Any transition decision (reducer only)
- Message routing and webhook delivery
"""

from __future__ import annotations

import asyncio
import time
import urllib.parse
from collections import deque
from typing import TYPE_CHECKING, Any

from constants import CHALLENGE_CODE_URL
from lifecycle.commands import (
    CancelTimer,
    Command,
    CreateClient,
    DeleteSession,
    DestroyClient,
    LogEvent,
    SaveSession,
    ScheduleReconnect,
    SurfaceChallenge,
)
from lifecycle.enums.source import StartSource
from lifecycle.enums.state import ConnectionState
from lifecycle.errors import ClientNotReadyError, SendFailedError
from lifecycle.events import (
    Event,
    EventType,
    InitFailed,
    ReconnectDue,
    RemoteSessionSaved,
    RestartRequested,
    SessionClearRequested,
    ShutdownRequested,
    StartRequested,
)
from lifecycle.reducer import reduce
from lifecycle.runtime_context import ClientBinding
from lifecycle.state_dataclass import ConnectionSnapshot

from observability.logger import log_event
from observability.metrics import timed

if TYPE_CHECKING:
    from lifecycle.runtime_context import (
        ClientFactory,
        MessageSink,
        MessagingClientProtocol,
        SessionStoreProtocol,
    )


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


class ConnectionManager:
    """
    Single owner of the messaging connection.

    Architectural role:
    ConnectionManager is the bridge between the pure lifecycle layer
    (reducer + immutable snapshot) and the imperative world
    (connection instances, session store, timers, logging).

    Guarantees:
    - Every event source (instance callbacks, reconnect timer, watchdog,
      operator routes) converges on handle_event()
    - Events are processed one at a time under a single asyncio.Lock
    - Events raised while a command executes are queued and processed
      in order before the lock is released
    - Commands run in reducer-emitted order, so a DestroyClient always
      completes before the following CreateClient starts
    - At most one instance reference is held at any time
    """

    def __init__(
        self,
        *,
        session_id: str,
        store: SessionStoreProtocol,
        client_factory: ClientFactory,
        on_message: MessageSink,
        initial_state: ConnectionSnapshot | None = None,
    ) -> None:
        self._session_id = session_id
        self._store = store
        self._client_factory = client_factory
        self._on_message = on_message
        self._state = initial_state or ConnectionSnapshot()

        self._client: MessagingClientProtocol | None = None
        self._client_generation: int = 0

        self._lock = asyncio.Lock()
        self._owner: asyncio.Task[object] | None = None
        self._pending: deque[Event] = deque()

        self._timers: dict[str, asyncio.Task[None]] = {}
        self._init_tasks: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Read-only surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionSnapshot:
        """
        Current immutable lifecycle snapshot.

        Only ConnectionManager swaps it, via the reducer.
        """
        return self._state

    @property
    def client(self) -> MessagingClientProtocol | None:
        return self._client

    @property
    def client_generation(self) -> int:
        """Generation of the held instance; 0 when none was ever held."""
        return self._client_generation

    @property
    def session_id(self) -> str:
        return self._session_id

    # ------------------------------------------------------------------
    # Control entry points
    # ------------------------------------------------------------------

    async def start(self, source: StartSource = StartSource.BOOT) -> None:
        await self.handle_event(
            StartRequested(event_type=EventType.START_REQUESTED, ts_ms=_now_ms(), source=source)
        )

    async def restart(self) -> None:
        await self.handle_event(
            RestartRequested(event_type=EventType.RESTART_REQUESTED, ts_ms=_now_ms())
        )

    async def clear_session(self) -> None:
        await self.handle_event(
            SessionClearRequested(event_type=EventType.SESSION_CLEAR_REQUESTED, ts_ms=_now_ms())
        )

    async def shutdown(self) -> None:
        """
        Tear down the live instance and stop all timers.

        Later events are ignored by the reducer.
        """
        await self.handle_event(
            ShutdownRequested(event_type=EventType.SHUTDOWN_REQUESTED, ts_ms=_now_ms())
        )

        for timer_id in list(self._timers.keys()):
            self._cancel_timer(timer_id)

        for task in list(self._init_tasks):
            task.cancel()

        pending = [*self._timers.values(), *self._init_tasks]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def send_message(self, chat_id: str, text: str) -> str:
        """
        Hand an outbound message to the live instance.

        Raises:
            ClientNotReadyError: state is not READY or no instance exists
            SendFailedError: the instance raised; carries its message
        """
        client = self._client
        if self._state.state is not ConnectionState.READY or client is None:
            raise ClientNotReadyError(self._state.state)

        try:
            return await client.send_message(chat_id, text)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            raise SendFailedError(str(exc) or type(exc).__name__) from exc

    # ------------------------------------------------------------------
    # Event pipeline
    # ------------------------------------------------------------------

    async def handle_event(self, event: Event) -> None:
        """
        Process a single event through the lifecycle pipeline.

        Processing steps:
        1. Pass the current snapshot and event to the pure reducer
        2. Swap in the new snapshot
        3. Execute all emitted commands sequentially

        When called from inside command execution (an instance emitting
        during destroy, a save confirmation) the event is queued and
        processed after the current one, under the same lock hold.
        """
        current = asyncio.current_task()
        if current is not None and current is self._owner:
            self._pending.append(event)
            return

        async with self._lock:
            self._owner = current
            try:
                self._pending.append(event)
                while self._pending:
                    await self._dispatch(self._pending.popleft())
            finally:
                self._owner = None
                self._pending.clear()

    async def _dispatch(self, event: Event) -> None:
        new_state, commands = reduce(self._state, event)
        self._state = new_state

        for cmd in commands:
            await self._execute_command(cmd)

    # ------------------------------------------------------------------
    # Command execution (side effects)
    # ------------------------------------------------------------------

    async def _execute_command(self, cmd: Command) -> None:  # pylint: disable=too-many-branches
        """Execute a single command with side effects."""

        if isinstance(cmd, LogEvent):
            log_event({
                **cmd.event,
                "session_id": self._session_id,
            }, level=cmd.level)

        elif isinstance(cmd, CreateClient):
            await self._create_client(cmd.generation)

        elif isinstance(cmd, DestroyClient):
            if self._client is not None and self._client_generation == cmd.generation:
                await self._destroy_client(reason=cmd.reason)
            elif self._client is not None:
                # Reference belongs to another generation; never keep two
                log_event({
                    "event_type": "CLIENT_GENERATION_MISMATCH",
                    "session_id": self._session_id,
                    "held_generation": self._client_generation,
                    "requested_generation": cmd.generation,
                }, level="warning")
                await self._destroy_client(reason=cmd.reason)

        elif isinstance(cmd, SurfaceChallenge):
            log_event({
                "event_type": "CREDENTIAL_CHALLENGE",
                "session_id": self._session_id,
                "scan_url": CHALLENGE_CODE_URL + urllib.parse.quote(cmd.challenge, safe=""),
            }, level="warning")

        elif isinstance(cmd, SaveSession):
            saved = await self._store_save(cmd.blob)
            if saved:
                self._pending.append(
                    RemoteSessionSaved(
                        event_type=EventType.REMOTE_SESSION_SAVED,
                        ts_ms=_now_ms(),
                        generation=cmd.generation,
                    )
                )

        elif isinstance(cmd, DeleteSession):
            await self._store_delete()
            log_event({
                "event_type": "SESSION_DELETE_EXECUTED",
                "session_id": self._session_id,
                "reason": cmd.reason,
            }, level="warning")

        elif isinstance(cmd, ScheduleReconnect):
            self._start_timer(
                timer_id="reconnect",
                duration_ms=cmd.delay_ms,
            )
            log_event({
                "event_type": "RECONNECT_TIMER_STARTED",
                "session_id": self._session_id,
                "attempt": cmd.attempt,
                "delay_s": cmd.delay_ms / 1000.0,
            })

        elif isinstance(cmd, CancelTimer):
            self._cancel_timer(cmd.timer_id)

        else:
            log_event({
                "event_type": "COMMAND_NOT_IMPLEMENTED",
                "session_id": self._session_id,
                "command_type": type(cmd).__name__,
            }, level="error")

    # ------------------------------------------------------------------
    # Session store access
    # ------------------------------------------------------------------
    #
    # Stores already degrade on their own errors; these wrappers cover
    # anything else a store implementation lets escape, so a store
    # fault can never leave a command half-executed.

    async def _store_extract(self) -> dict[str, Any] | None:
        try:
            return await self._store.extract(self._session_id)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            self._log_store_error("extract", exc)
            return None

    async def _store_save(self, blob: dict[str, Any]) -> bool:
        try:
            return await self._store.save(self._session_id, blob)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            self._log_store_error("save", exc)
            return False

    async def _store_delete(self) -> bool:
        try:
            return await self._store.delete(self._session_id)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            self._log_store_error("delete", exc)
            return False

    def _log_store_error(self, operation: str, exc: Exception) -> None:
        log_event({
            "event_type": "SESSION_STORE_ERROR",
            "session_id": self._session_id,
            "operation": operation,
            "error": f"{type(exc).__name__}: {exc}",
        }, level="error")

    # ------------------------------------------------------------------
    # Connection instance management
    # ------------------------------------------------------------------

    async def _create_client(self, generation: int) -> None:
        """
        Load the prior credential, build the instance, start initialize().

        initialize() runs as its own task so that the instance can report
        challenge/authenticated/ready while it is still connecting.
        """
        if self._client is not None:
            # Reducer always destroys first; reaching here means a bug upstream
            await self._destroy_client(reason="stale_reference")

        session = await self._store_extract()

        binding = ClientBinding(
            generation=generation,
            session_id=self._session_id,
            session=session,
            emit_event=self.handle_event,
            on_message=self._on_message,
        )

        try:
            client = self._client_factory(binding)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            self._pending.append(
                InitFailed(
                    event_type=EventType.INIT_FAILED,
                    ts_ms=_now_ms(),
                    generation=generation,
                    reason=f"{type(exc).__name__}: {exc}",
                )
            )
            return

        self._client = client
        self._client_generation = generation

        log_event({
            "event_type": "CLIENT_CREATED",
            "session_id": self._session_id,
            "generation": generation,
            "restored_session": session is not None,
        })

        task = asyncio.create_task(self._initialize_client(generation, client))
        self._init_tasks.add(task)
        task.add_done_callback(self._init_tasks.discard)

    async def _initialize_client(
        self,
        generation: int,
        client: MessagingClientProtocol,
    ) -> None:
        try:
            await client.initialize()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pylint: disable=broad-exception-caught
            await self.handle_event(
                InitFailed(
                    event_type=EventType.INIT_FAILED,
                    ts_ms=_now_ms(),
                    generation=generation,
                    reason=f"{type(exc).__name__}: {exc}",
                )
            )

    async def _destroy_client(self, *, reason: str) -> None:
        """
        Destroy the held instance.

        A failing destroy is logged; the reference is cleared regardless
        so reinitialization is never blocked.
        """
        client = self._client
        generation = self._client_generation
        if client is None:
            return

        try:
            with timed(
                "client_destroy",
                session_id=self._session_id,
                details={"generation": generation, "reason": reason},
            ):
                await client.destroy()
            log_event({
                "event_type": "CLIENT_DESTROYED",
                "session_id": self._session_id,
                "generation": generation,
                "reason": reason,
            })
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "CLIENT_DESTROY_FAILED",
                "session_id": self._session_id,
                "generation": generation,
                "reason": reason,
                "error": f"{type(exc).__name__}: {exc}",
            }, level="error")
        finally:
            self._client = None

    # ------------------------------------------------------------------
    # Timer management
    # ------------------------------------------------------------------

    def _start_timer(self, *, timer_id: str, duration_ms: int) -> None:
        """
        Start or replace the reconnect timer.

        The task re-enters handle_event() when it expires, maintaining
        the single event entry point invariant.
        """
        self._cancel_timer(timer_id)

        async def _timer_task() -> None:
            try:
                await asyncio.sleep(duration_ms / 1000.0)
                await self.handle_event(
                    ReconnectDue(event_type=EventType.RECONNECT_DUE, ts_ms=_now_ms())
                )
            except asyncio.CancelledError:
                return

        task = asyncio.create_task(_timer_task())
        self._timers[timer_id] = task
        task.add_done_callback(
            lambda t: self._timers.pop(timer_id, None) if self._timers.get(timer_id) is t else None
        )

    def _cancel_timer(self, timer_id: str) -> None:
        """
        Cancel an in-flight timer if it exists.

        Idempotent. A timer that is itself delivering its event is only
        forgotten, never cancelled from inside.
        """
        task = self._timers.pop(timer_id, None)
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return
        task.cancel()
