from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from homelink.errors import CommandRejected
from homelink.main import create_app
from homelink.settings import load_settings


@pytest.fixture
def client(tmp_path, transport, backend):
    backend.devices = [{"id": 1, "deviceCode": "LIGHT_1", "gpioPin": 4, "name": "Hall", "deviceType": "LIGHT", "deviceStatus": "OFF"}]
    backend.gateway = {"id": 7, "homeId": 1, "serialNumber": "MCU-1", "status": "ONLINE", "isOnline": True}
    settings = load_settings({"premises_id": 1, "cache_path": str(tmp_path / "cache.json")})
    app = create_app(settings, transport=transport, backend=backend)
    with TestClient(app) as c:
        yield c


def test_health(client):
    assert client.get("/health").json()["premises_id"] == 1


def test_devices_and_gateway(client):
    devices = client.get("/api/devices").json()["devices"]
    assert [d["id"] for d in devices] == [1]
    gw = client.get("/api/gateway").json()
    assert gw["view"]["liveness"] == "online"
    assert gw["gateway"]["serial"] == "MCU-1"


def test_command(client, backend):
    r = client.post("/api/devices/1/command", json={"action": "TURN_ON"})
    assert r.status_code == 200
    assert r.json()["device"]["status"] == "ON"
    assert ("device_command", 1, "TURN_ON") in backend.calls


def test_command_validation_and_errors(client, backend):
    assert client.post("/api/devices/1/command", json={"action": "DIM"}).status_code == 400
    assert client.post("/api/devices/42/command", json={"action": "TURN_ON"}).status_code == 404

    backend.errors["device_command"] = CommandRejected("Device is offline")
    assert client.post("/api/devices/1/command", json={"action": "TURN_OFF"}).status_code == 409
    notes = client.get("/api/notifications").json()["notifications"]
    assert notes and notes[-1]["kind"] == "command"


def test_enrollment_endpoints(client, backend):
    assert client.post("/api/enrollment/start", json={"name": "Door"}).json()["state"] == "awaiting_hardware"
    assert client.post("/api/enrollment/start", json={}).status_code == 409
    r = client.post("/api/enrollment/cancel").json()
    assert r == {"cancelled": True, "state": "idle"}
    assert client.get("/api/enrollment").json()["state"] == "idle"


def test_switch_premises(client, transport):
    assert client.post("/api/premises/5").json() == {"premises_id": 5}
    assert "smarthome/home/5/status" in transport.subscribed


def test_websocket_snapshot(client):
    with client.websocket_connect("/ws") as ws:
        evt = ws.receive_json()
        assert evt["type"] == "snapshot"
        assert evt["data"]["premises_id"] == 1
        ws.send_text("ping")
        assert ws.receive_text() == "pong"
