"""Tests for the REST routes and WebSocket fan-out."""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.routes import init_routes, router
from api.websocket import ConnectionManager
from session.manager import SessionManager


@pytest.fixture
def manager(loopback, settings, tmp_path):
    return SessionManager(
        transport_factory=lambda: loopback,
        settings=settings,
        save_dir=str(tmp_path / "inbox"),
    )


@pytest.fixture
def client(manager):
    app = FastAPI()
    init_routes(manager)
    app.include_router(router)
    with TestClient(app) as c:
        yield c


class TestSessionRoutes:
    def test_no_session_yet(self, client):
        assert client.get("/api/session").json() == {"state": "idle"}
        assert client.post("/api/session/signal", json={"blob": "x"}).status_code == 404
        assert client.post("/api/session/accept").status_code == 404

    def test_start_session(self, client):
        resp = client.post("/api/session", json={"role": "initiator"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["state"] == "awaiting_local_signal"
        assert body["local_signal"].startswith("PD1-")
        assert len(body["share_code"]) == 10

    def test_unknown_role(self, client):
        assert client.post("/api/session", json={"role": "observer"}).status_code == 422

    def test_bad_signal_is_400(self, client):
        client.post("/api/session", json={"role": "responder"})
        resp = client.post("/api/session/signal", json={"blob": "nonsense"})
        assert resp.status_code == 400
        assert client.get("/api/session").json()["state"] == "awaiting_remote_signal"

    def test_own_offer_is_400(self, client):
        offer = client.post("/api/session", json={"role": "initiator"}).json()["local_signal"]
        assert client.post("/api/session/signal", json={"blob": offer}).status_code == 400

    def test_send_before_connected_is_409(self, client, make_file):
        path, _ = make_file(10)
        client.post("/api/session", json={"role": "initiator"})
        assert client.post("/api/session/send", json={"file_path": path}).status_code == 409

    def test_send_missing_file_is_404(self, client, tmp_path):
        client.post("/api/session", json={"role": "initiator"})
        resp = client.post("/api/session/send", json={"file_path": str(tmp_path / "nope")})
        assert resp.status_code == 404

    @pytest.mark.parametrize("command", ["accept", "decline", "cancel"])
    def test_commands_without_offer_are_409(self, client, command):
        client.post("/api/session", json={"role": "initiator"})
        assert client.post(f"/api/session/{command}").status_code == 409


class TestSettingsRoutes:
    def test_get_settings(self, client, manager):
        body = client.get("/api/settings").json()
        assert body["save_dir"] == manager.save_dir
        assert body["session"]["chunk_size"] == 64 * 1024

    def test_update_save_dir(self, client, manager, tmp_path):
        target = tmp_path / "new-inbox"
        resp = client.put("/api/settings", json={"save_dir": str(target)})
        assert resp.status_code == 200
        assert manager.save_dir == str(target)
        assert target.is_dir()


class FakeSocket:
    def __init__(self, broken: bool = False) -> None:
        self.sent: list[str] = []
        self.broken = broken

    async def accept(self) -> None:
        pass

    async def send_text(self, text: str) -> None:
        if self.broken:
            raise RuntimeError("socket closed")
        self.sent.append(text)


class TestConnectionManager:
    @pytest.mark.asyncio
    async def test_snapshot_on_connect_and_broadcast(self):
        ws_manager = ConnectionManager()
        alive, dead = FakeSocket(), FakeSocket()
        await ws_manager.connect(alive, snapshot={"state": "idle"})
        await ws_manager.connect(dead)
        dead.broken = True

        await ws_manager.handle_event("state_changed", {"state": "connected"})

        assert [json.loads(m) for m in alive.sent] == [
            {"event": "snapshot", "data": {"state": "idle"}},
            {"event": "state_changed", "data": {"state": "connected"}},
        ]
        assert ws_manager.connection_count == 1

    def test_websocket_endpoint_sends_snapshot(self):
        import main

        with TestClient(main.app) as c:
            with c.websocket_connect("/ws") as ws:
                message = ws.receive_json()
        assert message["event"] == "snapshot"
        assert message["data"]["state"] == "idle"
