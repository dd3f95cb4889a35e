# pylint: disable=missing-module-docstring,missing-function-docstring
import asyncio

import pytest

from fakes import FakeFactory, LogCapture, drop_message, settle

from lifecycle.enums.source import StartSource
from lifecycle.enums.state import ConnectionState
from lifecycle.errors import ClientNotReadyError, SendFailedError
from lifecycle.events import (
    AuthFailure,
    Disconnected,
    EventType,
    Ready,
    SessionUpdated,
)
from lifecycle.retry import BackoffPolicy
from lifecycle.runtime import ConnectionManager
from lifecycle.state_dataclass import ConnectionSnapshot, LifecyclePolicy
from observability import logger
from session.memory_store import InMemorySessionStore


@pytest.fixture(name="logs")
def fixture_logs(monkeypatch: pytest.MonkeyPatch) -> LogCapture:
    capture = LogCapture()
    monkeypatch.setattr(logger, "_print", capture)
    monkeypatch.setattr(logger, "_min_level", 0)
    return capture


def make_manager(
    factory: FakeFactory,
    store: InMemorySessionStore | None = None,
    *,
    reconnect_initial_ms: int = 5_000,
) -> ConnectionManager:
    policy = LifecyclePolicy(
        reconnect_backoff=BackoffPolicy(
            initial_delay_ms=reconnect_initial_ms,
            max_delay_ms=reconnect_initial_ms * 60,
        ),
    )
    return ConnectionManager(
        session_id="s1",
        store=store or InMemorySessionStore(),
        client_factory=factory,
        on_message=drop_message,
        initial_state=ConnectionSnapshot(policy=policy),
    )


def ready(generation: int) -> Ready:
    return Ready(event_type=EventType.READY, ts_ms=0, generation=generation)


def disconnected(generation: int) -> Disconnected:
    return Disconnected(event_type=EventType.DISCONNECTED, ts_ms=0, generation=generation)


# ---------------------------------------------------------------------
# Instance ownership
# ---------------------------------------------------------------------

def test_start_creates_and_initializes_one_instance(logs: LogCapture):
    async def scenario() -> None:
        factory = FakeFactory()
        manager = make_manager(factory)

        await manager.start()
        await settle()

        assert manager.state.state is ConnectionState.INITIALIZING
        assert len(factory.created) == 1
        assert factory.latest.initialized
        assert manager.client is factory.latest
        assert manager.client_generation == 1

        await factory.latest.emit(ready(1))
        assert manager.state.state is ConnectionState.READY

        await manager.shutdown()

    asyncio.run(scenario())
    assert logs.of_type("CLIENT_CREATED")


def test_concurrent_starts_create_exactly_one_instance(logs: LogCapture):
    async def scenario() -> FakeFactory:
        factory = FakeFactory()
        manager = make_manager(factory)

        await asyncio.gather(
            manager.start(StartSource.BOOT),
            manager.start(StartSource.WATCHDOG),
            manager.start(StartSource.OPERATOR),
        )
        await settle()
        await manager.shutdown()
        return factory

    factory = asyncio.run(scenario())

    assert len(factory.created) == 1
    assert "already_started" in [
        r["details"].get("reason") for r in logs.lines if r.get("decision") == "ignore"
    ]


def test_restart_destroys_previous_before_creating_next(logs: LogCapture):
    async def scenario() -> FakeFactory:
        factory = FakeFactory()
        manager = make_manager(factory)

        await manager.start()
        await settle()
        await manager.restart()
        await settle()

        assert manager.client is factory.latest
        assert manager.client_generation == 2
        await manager.shutdown()
        return factory

    factory = asyncio.run(scenario())

    journal = [entry for entry in factory.journal if entry[0] != "initialize"]
    assert journal[:3] == [("create", 1), ("destroy", 1), ("create", 2)]
    assert logs.of_type("CLIENT_DESTROYED")


def test_failing_destroy_still_clears_reference(logs: LogCapture):
    async def scenario() -> FakeFactory:
        factory = FakeFactory()
        factory.fail_next_kwargs.append({"fail_destroy": True})
        manager = make_manager(factory)

        await manager.start()
        await settle()
        await manager.restart()
        await settle()

        assert factory.created[0].destroyed
        assert manager.client is factory.created[1]
        assert manager.state.state is ConnectionState.INITIALIZING
        await manager.shutdown()
        return factory

    factory = asyncio.run(scenario())

    assert len(factory.created) == 2
    failed = logs.of_type("CLIENT_DESTROY_FAILED")
    assert len(failed) == 1
    assert "destroy blew up" in failed[0]["error"]


def test_stale_events_from_replaced_instance_are_ignored(logs: LogCapture):
    async def scenario() -> None:
        factory = FakeFactory()
        manager = make_manager(factory)

        await manager.start()
        await settle()
        old = factory.latest
        await manager.restart()
        await settle()

        await old.emit(ready(1))
        assert manager.state.state is ConnectionState.INITIALIZING

        await old.emit(disconnected(1))
        assert manager.client is factory.latest
        await manager.shutdown()

    asyncio.run(scenario())
    assert "stale_generation" in [
        r["details"].get("reason") for r in logs.lines if r.get("decision") == "ignore"
    ]


def test_initialize_failure_parks_in_error(logs: LogCapture):
    async def scenario() -> None:
        factory = FakeFactory(fail_init=True)
        manager = make_manager(factory)

        await manager.start()
        await settle()

        assert manager.state.state is ConnectionState.ERROR
        assert manager.client is None
        assert factory.latest.destroyed
        await manager.shutdown()

    asyncio.run(scenario())
    assert "init_failed" in logs.decisions()


def test_factory_error_is_reported_as_init_failure(logs: LogCapture):
    def broken_factory(_binding):
        raise ValueError("bad bridge url")

    async def scenario() -> None:
        manager = ConnectionManager(
            session_id="s1",
            store=InMemorySessionStore(),
            client_factory=broken_factory,
            on_message=drop_message,
        )

        await manager.start()

        assert manager.state.state is ConnectionState.ERROR
        assert manager.client is None
        assert "bad bridge url" in (manager.state.last_error or "")

    asyncio.run(scenario())
    assert "init_failed" in logs.decisions()


# ---------------------------------------------------------------------
# Reconnect
# ---------------------------------------------------------------------

def test_disconnect_from_ready_reconnects_after_backoff(logs: LogCapture):
    async def scenario() -> FakeFactory:
        factory = FakeFactory()
        manager = make_manager(factory, reconnect_initial_ms=10)

        await manager.start()
        await settle()
        await factory.latest.emit(ready(1))

        await factory.latest.emit(disconnected(1))
        assert manager.state.state is ConnectionState.DISCONNECTED
        assert manager.state.reconnect_attempt.attempt == 1
        assert manager.client is None

        await asyncio.sleep(0.05)
        await settle()

        assert manager.state.state is ConnectionState.INITIALIZING
        assert manager.client_generation == 2

        await factory.latest.emit(ready(2))
        assert manager.state.reconnect_attempt.attempt == 0
        await manager.shutdown()
        return factory

    factory = asyncio.run(scenario())

    assert len(factory.created) == 2
    assert len(logs.of_type("RECONNECT_TIMER_STARTED")) == 1


def test_shutdown_cancels_pending_reconnect(logs: LogCapture):
    async def scenario() -> FakeFactory:
        factory = FakeFactory()
        manager = make_manager(factory, reconnect_initial_ms=20)

        await manager.start()
        await settle()
        await factory.latest.emit(ready(1))
        await factory.latest.emit(disconnected(1))

        await manager.shutdown()
        await asyncio.sleep(0.05)

        await manager.start(StartSource.OPERATOR)
        assert manager.state.shutting_down
        return factory

    factory = asyncio.run(scenario())

    assert len(factory.created) == 1
    assert "shutdown" in logs.decisions()


# ---------------------------------------------------------------------
# Session persistence
# ---------------------------------------------------------------------

def test_restored_session_is_passed_to_new_instance():
    async def scenario() -> FakeFactory:
        factory = FakeFactory()
        store = InMemorySessionStore({"s1": {"creds": "abc"}})
        manager = make_manager(factory, store)

        await manager.start()
        await manager.shutdown()
        return factory

    factory = asyncio.run(scenario())

    assert factory.created[0].binding.session == {"creds": "abc"}
    assert factory.created[0].binding.session_id == "s1"


def test_session_update_is_saved_and_confirmed(logs: LogCapture):
    store = InMemorySessionStore()

    async def scenario() -> None:
        factory = FakeFactory()
        manager = make_manager(factory, store)

        await manager.start()
        await settle()
        await factory.latest.emit(SessionUpdated(
            event_type=EventType.SESSION_UPDATED,
            ts_ms=0,
            generation=1,
            blob={"creds": "new"},
        ))
        await manager.shutdown()

    asyncio.run(scenario())

    assert asyncio.run(store.extract("s1")) == {"creds": "new"}
    assert "remote_session_saved" in logs.decisions()


def test_auth_failure_deletes_session_and_does_not_reconnect(logs: LogCapture):
    store = InMemorySessionStore({"s1": {"creds": "old"}})

    async def scenario() -> FakeFactory:
        factory = FakeFactory()
        manager = make_manager(factory, store, reconnect_initial_ms=10)

        await manager.start()
        await settle()
        await factory.latest.emit(AuthFailure(
            event_type=EventType.AUTH_FAILURE,
            ts_ms=0,
            generation=1,
            message="logged out",
        ))

        assert manager.state.state is ConnectionState.ERROR
        assert manager.client is None

        await asyncio.sleep(0.05)
        await manager.start(StartSource.WATCHDOG)
        assert manager.state.state is ConnectionState.ERROR
        await manager.shutdown()
        return factory

    factory = asyncio.run(scenario())

    assert len(factory.created) == 1
    assert not asyncio.run(store.exists("s1"))
    assert logs.of_type("SESSION_DELETE_EXECUTED")[0]["reason"] == "auth_failure"


class BrokenStore(InMemorySessionStore):
    """Store whose operations raise instead of degrading."""

    def __init__(self, *failing: str) -> None:
        super().__init__({"s1": {"creds": "old"}})
        self.failing = set(failing)

    async def extract(self, session_id):
        if "extract" in self.failing:
            raise RuntimeError("store client closed")
        return await super().extract(session_id)

    async def save(self, session_id, blob):
        if "save" in self.failing:
            raise RuntimeError("store client closed")
        return await super().save(session_id, blob)

    async def delete(self, session_id):
        if "delete" in self.failing:
            raise RuntimeError("store client closed")
        return await super().delete(session_id)


def test_raising_store_extract_still_builds_instance(logs: LogCapture):
    store = BrokenStore("extract")

    async def scenario() -> FakeFactory:
        factory = FakeFactory()
        manager = make_manager(factory, store)

        await manager.start()
        await settle()

        assert manager.state.state is ConnectionState.INITIALIZING
        assert manager.client is factory.latest
        assert factory.latest.binding.session is None

        await factory.latest.emit(ready(1))
        assert manager.state.state is ConnectionState.READY
        await manager.shutdown()
        return factory

    factory = asyncio.run(scenario())

    assert len(factory.created) == 1
    errors = logs.of_type("SESSION_STORE_ERROR")
    assert errors[0]["operation"] == "extract"
    assert "store client closed" in errors[0]["error"]


def test_raising_store_save_is_not_confirmed(logs: LogCapture):
    store = BrokenStore("save")

    async def scenario() -> ConnectionManager:
        factory = FakeFactory()
        manager = make_manager(factory, store)

        await manager.start()
        await settle()
        await factory.latest.emit(SessionUpdated(
            event_type=EventType.SESSION_UPDATED,
            ts_ms=0,
            generation=1,
            blob={"creds": "new"},
        ))
        await factory.latest.emit(ready(1))
        return manager

    manager = asyncio.run(scenario())

    assert manager.state.state is ConnectionState.READY
    assert "remote_session_saved" not in logs.decisions()
    assert logs.of_type("SESSION_STORE_ERROR")[0]["operation"] == "save"


def test_raising_store_delete_still_destroys_instance(logs: LogCapture):
    store = BrokenStore("delete")

    async def scenario() -> tuple[ConnectionManager, FakeFactory]:
        factory = FakeFactory()
        manager = make_manager(factory, store)

        await manager.start()
        await settle()
        await factory.latest.emit(AuthFailure(
            event_type=EventType.AUTH_FAILURE,
            ts_ms=0,
            generation=1,
            message="logged out",
        ))

        store.failing.clear()
        await manager.start(StartSource.OPERATOR)
        await settle()
        return manager, factory

    manager, factory = asyncio.run(scenario())

    assert factory.created[0].destroyed
    assert len(factory.created) == 2
    assert manager.client is factory.created[1]
    assert manager.state.state is ConnectionState.INITIALIZING
    assert logs.of_type("SESSION_STORE_ERROR")[0]["operation"] == "delete"


def test_clear_session_removes_credential_and_instance():
    store = InMemorySessionStore({"s1": {"creds": "old"}})

    async def scenario() -> ConnectionManager:
        factory = FakeFactory()
        manager = make_manager(factory, store)

        await manager.start()
        await settle()
        await manager.clear_session()
        return manager

    manager = asyncio.run(scenario())

    assert manager.state.state is ConnectionState.DISCONNECTED
    assert manager.client is None
    assert not asyncio.run(store.exists("s1"))


# ---------------------------------------------------------------------
# Outbound send
# ---------------------------------------------------------------------

def test_send_message_requires_ready():
    async def scenario() -> None:
        factory = FakeFactory()
        manager = make_manager(factory)

        with pytest.raises(ClientNotReadyError) as excinfo:
            await manager.send_message("123@g.us", "hi")
        assert excinfo.value.state is ConnectionState.DISCONNECTED

        await manager.start()
        await settle()
        with pytest.raises(ClientNotReadyError, match=r"State: INITIALIZING"):
            await manager.send_message("123@g.us", "hi")

        await factory.latest.emit(ready(1))
        assert await manager.send_message("123@g.us", "hi") == "MSG1"
        assert factory.latest.sent == [("123@g.us", "hi")]
        await manager.shutdown()

    asyncio.run(scenario())


def test_send_failure_surfaces_instance_error_verbatim():
    async def scenario() -> None:
        factory = FakeFactory()
        manager = make_manager(factory)

        await manager.start()
        await settle()
        await factory.latest.emit(ready(1))
        factory.latest.send_error = RuntimeError("chat not found")

        with pytest.raises(SendFailedError, match="chat not found"):
            await manager.send_message("123@g.us", "hi")
        await manager.shutdown()

    asyncio.run(scenario())
