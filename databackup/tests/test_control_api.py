"""
Integration Tests: Control + Blacklist API
===========================================

FastAPI TestClient against databackup.main:app with the controller
dependency overridden (in-memory gateway). Background tasks run before
TestClient returns, so a started flow has finished when the POST returns.
"""

import pytest
from fastapi.testclient import TestClient

from databackup.api.control import FlowState, RunController, get_controller
from databackup.flows import RunMonitor
from databackup.main import app


class _Shell:
    async def is_connected(self) -> bool:
        return True

    async def has_root(self) -> bool:
        return True


@pytest.fixture
def controller(gateway, settings):
    gateway.shell_client = _Shell()
    return RunController(gateway_factory=lambda: gateway, settings=settings, monitor=RunMonitor())


@pytest.fixture
def client(controller):
    app.dependency_overrides[get_controller] = lambda: controller
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


class TestControl:

    def test_unknown_flow(self, client):
        response = client.post("/api/control/format-disk", json={"retry": False})
        assert response.status_code == 404

    def test_run_empty_restore(self, client, controller):
        response = client.post("/api/control/restore-app", json={"retry": False})
        assert response.status_code == 200
        assert response.json()["flow"] == "restore-app"

        status = client.get("/api/control/status").json()
        assert status["running"] is False
        assert status["flow"] == "restore-app"
        assert status["result"]["total"] == 0
        assert status["finished_at"] is not None

    def test_body_optional(self, client):
        assert client.post("/api/control/backup-media").status_code == 200

    def test_concurrent_run_rejected(self, client, controller):
        controller.state = FlowState(running=True, flow="backup-app")
        try:
            response = client.post("/api/control/restore-app", json={"retry": False})
            assert response.status_code == 409
        finally:
            controller.state = FlowState()

    def test_cancel_without_runner(self, client, controller):
        # claimed slot whose runner was never built
        controller.state = FlowState(running=True, flow="backup-app")
        try:
            assert controller.cancel() is False
            assert client.post("/api/control/cancel").json()["was_running"] is False
        finally:
            controller.state = FlowState()

    def test_cancel_running_flow(self, client, controller):
        runner = controller.start("restore-app")
        try:
            assert controller.cancel() is True
            assert runner.cancel_event.is_set()
        finally:
            controller.state = FlowState()

    def test_retry_without_failures_rejected(self, client):
        response = client.post("/api/control/restore-media", json={"retry": True})
        assert response.status_code == 409

    def test_cancel_when_idle(self, client):
        body = client.post("/api/control/cancel").json()
        assert body["was_running"] is False

    def test_events_history(self, client):
        client.post("/api/control/restore-app", json={"retry": False})
        events = client.get("/api/control/events").json()["events"]
        kinds = [e["kind"] for e in events]
        assert kinds[0] == "run"
        assert events[-1]["state"] == "finished"

    def test_websocket_sends_history(self, client, controller):
        controller.monitor.publish("run", flow="restore-app", state="started")
        with client.websocket_connect("/ws/events") as ws:
            first = ws.receive_json()
            assert first["kind"] == "run"
            ws.send_text("ping")
            assert ws.receive_json() == {"kind": "pong"}


class TestBlacklist:

    def test_add_list_remove(self, client):
        assert client.post("/api/blacklist", json={"package_name": "com.bad", "app_name": "Bad"}).status_code == 200
        listing = client.get("/api/blacklist").json()
        assert listing["count"] == 1
        assert listing["entries"][0] == {"package_name": "com.bad", "app_name": "Bad"}

        assert client.delete("/api/blacklist/com.bad").status_code == 200
        assert client.get("/api/blacklist").json()["count"] == 0

    def test_empty_package_rejected(self, client):
        assert client.post("/api/blacklist", json={"package_name": " "}).status_code == 422

    def test_save_failure(self, client, gateway):
        gateway.fail_write = True
        response = client.post("/api/blacklist", json={"package_name": "com.bad"})
        assert response.status_code == 500


def test_health(client):
    body = client.get("/api/health").json()
    assert body["status"] == "healthy"
    assert body["running"] is False
