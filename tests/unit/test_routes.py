# pylint: disable=missing-module-docstring,missing-function-docstring
import time

import pytest
from fastapi.testclient import TestClient

from fakes import FakeFactory, LogCapture

from config import AppConfig
from delivery.sender import WebhookSender
from observability import logger
from server.app import create_app
from session.memory_store import InMemorySessionStore


@pytest.fixture(name="logs")
def fixture_logs(monkeypatch: pytest.MonkeyPatch) -> LogCapture:
    capture = LogCapture()
    monkeypatch.setattr(logger, "_print", capture)
    monkeypatch.setattr(logger, "_min_level", logger._LEVELS["info"])  # pylint: disable=protected-access
    return capture


def build(
    factory: FakeFactory,
    store: InMemorySessionStore | None = None,
    **config_overrides,
):
    config = AppConfig(session_id="s1", session_store="memory", **config_overrides)
    app = create_app(
        config,
        store=store or InMemorySessionStore(),
        client_factory=factory,
        sender=WebhookSender(url=None, session_id="s1"),
    )
    return app


def wait_for_state(client: TestClient, expected: str) -> None:
    for _ in range(50):
        if client.get("/health").json()["clientState"] == expected:
            return
        time.sleep(0.01)
    raise AssertionError(f"state never reached {expected}")


def test_status_reports_lifecycle_fields(logs: LogCapture):
    factory = FakeFactory(auto_ready=True)

    with TestClient(build(factory)) as client:
        wait_for_state(client, "READY")
        body = client.get("/").json()

    assert body["status"] == "alive"
    assert body["clientState"] == "READY"
    assert body["sessionId"] == "s1"
    assert body["reconnectAttempts"] == 0
    assert body["webhookUrlSet"] is False
    assert body["timestamp"].endswith("Z")
    assert logs.of_type("APP_STARTING")


def test_health_is_ok_while_initializing():
    factory = FakeFactory()

    with TestClient(build(factory)) as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "clientState": "INITIALIZING"}


def test_send_message_normalizes_group_id(logs: LogCapture):
    factory = FakeFactory(auto_ready=True)

    with TestClient(build(factory)) as client:
        wait_for_state(client, "READY")
        response = client.post("/send-message", json={"groupId": "1203630", "message": "hi"})

    assert response.status_code == 200
    assert response.json() == {"success": True, "messageId": "MSG1"}
    assert factory.latest.sent == [("1203630@g.us", "hi")]
    assert logs.of_type("SEND_MESSAGE_OK")


def test_send_message_requires_fields():
    factory = FakeFactory(auto_ready=True)

    with TestClient(build(factory)) as client:
        wait_for_state(client, "READY")
        missing = client.post("/send-message", json={"groupId": "1203630"})
        not_json = client.post("/send-message", content=b"nope")

    assert missing.status_code == 400
    assert missing.json() == {"success": False, "error": "Missing groupId or message"}
    assert not_json.status_code == 400


def test_send_message_fails_fast_when_not_ready():
    factory = FakeFactory()

    with TestClient(build(factory)) as client:
        response = client.post("/send-message", json={"groupId": "1203630@g.us", "message": "hi"})

    assert response.status_code == 503
    assert response.json() == {
        "success": False,
        "error": "Messaging client not ready (State: INITIALIZING)",
    }


def test_send_message_failure_returns_instance_error():
    factory = FakeFactory(auto_ready=True)

    with TestClient(build(factory)) as client:
        wait_for_state(client, "READY")
        factory.latest.send_error = RuntimeError("chat not found")
        response = client.post("/send-message", json={"groupId": "1203630", "message": "hi"})

    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "chat not found"}


def test_clear_session_deletes_credential_and_disconnects():
    factory = FakeFactory(auto_ready=True)
    store = InMemorySessionStore({"s1": {"creds": "x"}})

    with TestClient(build(factory, store)) as client:
        wait_for_state(client, "READY")
        response = client.post("/clear-session")
        state = client.get("/").json()["clientState"]

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "Session s1 cleared."}
    assert state == "DISCONNECTED"
    assert factory.latest.destroyed
    assert "s1" not in store._records  # pylint: disable=protected-access


def test_restart_replaces_instance():
    factory = FakeFactory(auto_ready=True)

    with TestClient(build(factory)) as client:
        wait_for_state(client, "READY")
        response = client.post("/restart")
        wait_for_state(client, "READY")

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert len(factory.created) == 2
    assert factory.created[0].destroyed


def test_operator_endpoints_require_api_key_when_configured():
    factory = FakeFactory(auto_ready=True)

    with TestClient(build(factory, admin_api_key="secret")) as client:
        wait_for_state(client, "READY")
        denied = client.post("/restart")
        wrong = client.post("/clear-session", headers={"X-API-Key": "nope"})
        allowed = client.post("/restart", headers={"X-API-Key": "secret"})
        status = client.get("/")

    assert denied.status_code == 401
    assert denied.json() == {"success": False, "error": "Unauthorized"}
    assert wrong.status_code == 401
    assert allowed.status_code == 200
    assert status.status_code == 200


def test_shutdown_destroys_live_instance(logs: LogCapture):
    factory = FakeFactory(auto_ready=True)

    with TestClient(build(factory)) as client:
        wait_for_state(client, "READY")

    assert factory.latest.destroyed
    assert logs.of_type("APP_STOPPED")
