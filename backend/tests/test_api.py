"""HTTP API tests (FastAPI TestClient, no lifespan)."""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.commands import router as commands_router
from api.state import router as state_router
from services.command_dispatcher import CommandDispatcher
from services.modbus_poller import ModbusPoller

DEVICE = {"id": "gen-1", "name": "Gen 1", "manufacturer": "DEIF", "model": "DEIF GC-1F/2"}


@pytest.fixture
def app(fake_redis, reader, table):
    app = FastAPI()
    app.include_router(state_router)
    app.include_router(commands_router)
    app.state.redis = fake_redis
    app.state.poller = ModbusPoller(
        fake_redis, reader, table, interval=5.0, prefix="test:gc1f2", retain=True, device=DEVICE,
    )
    app.state.dispatcher = CommandDispatcher(reader, table.commands, cooldown=60.0)
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


class TestStateApi:
    def test_no_state_yet(self, client):
        assert client.get("/api/state").status_code == 404

    def test_from_poller_memory(self, app, client):
        app.state.poller.last_snapshot = {"timestamp": "t", "status": {"operating_mode": "Auto"}}
        resp = client.get("/api/state")
        assert resp.status_code == 200
        assert resp.json()["status"]["operating_mode"] == "Auto"

    def test_falls_back_to_redis(self, app, client, fake_redis):
        fake_redis.store[app.state.poller.state_key] = json.dumps({"timestamp": "earlier"}).encode()
        assert client.get("/api/state").json() == {"timestamp": "earlier"}

    def test_poller_not_initialized(self, app, client):
        app.state.poller = None
        assert client.get("/api/state").status_code == 503

    def test_poller_status(self, client):
        body = client.get("/api/state/poller").json()
        assert body["reader"] == "FAKE"
        assert body["table_version"] == "gc1f2-h2-1"
        assert body["polls_ok"] == 0


class TestCommandsApi:
    def test_list(self, client, table):
        body = client.get("/api/commands").json()
        assert [c["identifier"] for c in body] == [c.identifier for c in table.commands]
        mb_close = next(c for c in body if c["identifier"] == "mb_close")
        assert mb_close["enabled"] is False

    def test_send_accepted(self, client, reader, table):
        resp = client.post("/api/commands/start_engine")
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["status"] == "accepted"
        assert reader.writes == [(table.command_map["start_engine"].coil, True)]

    def test_cooldown_429(self, client, reader):
        client.post("/api/commands/start_engine")
        resp = client.post("/api/commands/stop_engine")
        assert resp.status_code == 429
        assert int(resp.headers["Retry-After"]) >= 1
        assert len(reader.writes) == 1

    def test_unknown_404(self, client):
        assert client.post("/api/commands/launch").status_code == 404

    def test_disabled_403(self, client, reader):
        assert client.post("/api/commands/mb_close").status_code == 403
        assert reader.writes == []

    def test_write_failed_502(self, client, reader):
        reader.fail_writes = True
        resp = client.post("/api/commands/alarm_ack")
        assert resp.status_code == 502
        assert "write_failed" in resp.json()["detail"]

    def test_dispatcher_missing_503(self, app, client):
        app.state.dispatcher = None
        assert client.get("/api/commands").status_code == 503
