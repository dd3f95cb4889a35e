# pylint: disable=missing-module-docstring,missing-function-docstring
import asyncio

import pytest

from fakes import FakeFactory, LogCapture, drop_message, settle

from lifecycle.enums.state import ConnectionState
from lifecycle.events import AuthFailure, EventType, Ready
from lifecycle.runtime import ConnectionManager
from lifecycle.watchdog import Watchdog
from observability import logger
from session.memory_store import InMemorySessionStore


@pytest.fixture(name="logs")
def fixture_logs(monkeypatch: pytest.MonkeyPatch) -> LogCapture:
    capture = LogCapture()
    monkeypatch.setattr(logger, "_print", capture)
    monkeypatch.setattr(logger, "_min_level", 0)
    return capture


def make(factory: FakeFactory, interval_s: float = 300.0) -> tuple[ConnectionManager, Watchdog]:
    manager = ConnectionManager(
        session_id="s1",
        store=InMemorySessionStore(),
        client_factory=factory,
        on_message=drop_message,
    )
    return manager, Watchdog(manager=manager, interval_s=interval_s, probe_timeout_s=0.5)


async def bring_to_ready(manager: ConnectionManager, factory: FakeFactory) -> None:
    await manager.start()
    await settle()
    await factory.latest.emit(Ready(event_type=EventType.READY, ts_ms=0, generation=1))
    assert manager.state.state is ConnectionState.READY


def test_no_instance_triggers_exactly_one_start(logs: LogCapture):
    async def scenario() -> FakeFactory:
        factory = FakeFactory()
        manager, watchdog = make(factory)

        await asyncio.gather(watchdog.check_once(), watchdog.check_once())
        await settle()

        assert manager.state.state is ConnectionState.INITIALIZING
        await manager.shutdown()
        return factory

    factory = asyncio.run(scenario())

    assert len(factory.created) == 1
    assert logs.of_type("WATCHDOG_NO_CLIENT")


def test_healthy_instance_is_left_alone(logs: LogCapture):
    async def scenario() -> FakeFactory:
        factory = FakeFactory()
        manager, watchdog = make(factory)
        await bring_to_ready(manager, factory)

        await watchdog.check_once()

        assert manager.state.state is ConnectionState.READY
        await manager.shutdown()
        return factory

    factory = asyncio.run(scenario())

    assert len(factory.created) == 1
    assert logs.of_type("WATCHDOG_HEALTHY")


def test_unexpected_status_forces_restart(logs: LogCapture):
    async def scenario() -> FakeFactory:
        factory = FakeFactory()
        manager, watchdog = make(factory)
        await bring_to_ready(manager, factory)
        factory.latest.status = "OPENING"

        await watchdog.check_once()
        await settle()

        assert manager.client is factory.latest
        assert manager.client_generation == 2
        await manager.shutdown()
        return factory

    factory = asyncio.run(scenario())

    assert len(factory.created) == 2
    assert factory.created[0].destroyed
    unhealthy = logs.of_type("WATCHDOG_UNHEALTHY")
    assert unhealthy[0]["reason"] == "unexpected_status: OPENING"


def test_status_query_error_counts_as_not_connected(logs: LogCapture):
    async def scenario() -> FakeFactory:
        factory = FakeFactory()
        manager, watchdog = make(factory)
        await bring_to_ready(manager, factory)
        factory.latest.status = ConnectionError("page closed")

        await watchdog.check_once()
        await settle()

        assert manager.client_generation == 2
        await manager.shutdown()
        return factory

    factory = asyncio.run(scenario())

    assert len(factory.created) == 2
    assert "page closed" in logs.of_type("WATCHDOG_UNHEALTHY")[0]["reason"]


def test_watchdog_respects_error_after_auth_failure():
    async def scenario() -> FakeFactory:
        factory = FakeFactory()
        manager, watchdog = make(factory)
        await manager.start()
        await settle()
        await factory.latest.emit(AuthFailure(
            event_type=EventType.AUTH_FAILURE,
            ts_ms=0,
            generation=1,
        ))

        await watchdog.check_once()
        await watchdog.check_once()

        assert manager.state.state is ConnectionState.ERROR
        assert manager.client is None
        return factory

    factory = asyncio.run(scenario())

    assert len(factory.created) == 1


def test_loop_runs_on_interval_and_stops():
    async def scenario() -> tuple[FakeFactory, bool]:
        factory = FakeFactory()
        manager, watchdog = make(factory, interval_s=0.01)

        watchdog.start()
        watchdog.start()
        await asyncio.sleep(0.05)
        await watchdog.stop()
        running = watchdog.running

        await manager.shutdown()
        return factory, running

    factory, running = asyncio.run(scenario())

    assert not running
    assert len(factory.created) == 1
