import asyncio

import pytest
from fastapi.testclient import TestClient

from conftest import FakeSerialPort
from dvbridge import __version__
from dvbridge.lib.models.config import BridgeConfig
from dvbridge.apps.api_server.api_server import create_app
from dvbridge.apps.bridge.bridge_service import BridgeService


async def no_sleep(seconds):
    await asyncio.sleep(0)


@pytest.fixture
def port():
    return FakeSerialPort()


@pytest.fixture
def client(port):
    bridge = BridgeService(BridgeConfig(), lambda: port, sleep=no_sleep)
    with TestClient(create_app(bridge)) as client:
        yield client


def receive_until(websocket, msg_type):
    for _ in range(20):
        message = websocket.receive_json()
        if message["type"] == msg_type:
            return message
    raise AssertionError(f"no {msg_type} message received")


def test_api_root(client):
    response = client.get("/api")
    assert response.status_code == 200
    assert response.json() == {"service": "DV Bridge API", "version": __version__, "status": "running"}


def test_health_while_disconnected(client):
    body = client.get("/api/v1/health").json()
    assert body["status"] == "degraded"
    assert body["link_status"]["connected"] is False


def test_telemetry(client):
    body = client.get("/api/v1/telemetry").json()
    assert body["control_mode"] == "state"
    assert body["tx"]["scheduler_state"] == "stopped"
    assert body["gamepad"]["press_counts"] == [0, 0, 0, 0]


def test_connect_and_disconnect(client, port):
    response = client.post("/api/v1/serial/connect", json={"baudrate": 1000000})
    assert response.status_code == 200
    link = response.json()["link_status"]
    assert link["connected"] is True
    assert link["baudrate"] == 1000000
    assert port.lines[:2] == ["V", "C"]

    assert client.get("/api/v1/health").json()["status"] == "ok"

    response = client.post("/api/v1/serial/disconnect")
    assert response.status_code == 200
    link = response.json()["link_status"]
    assert link["connected"] is False
    assert link["state_text"] == "disconnected by user"


def test_connect_without_body(client, port):
    response = client.post("/api/v1/serial/connect")
    assert response.status_code == 200
    assert port.opened_with == 2000000


def test_connect_failure_is_bad_gateway(client, port):
    port.open_error = OSError("device busy")

    response = client.post("/api/v1/serial/connect")

    assert response.status_code == 502
    assert response.json()["detail"].startswith("connect failed")


def test_control_mode(client):
    response = client.post("/api/v1/control/mode", json={"mode": "raw"})
    assert response.status_code == 200
    body = response.json()
    assert body["mode"] == "raw"
    assert body["control_status"]["active_case"] == "RAW_MANUAL"

    assert client.get("/api/v1/telemetry").json()["control_mode"] == "raw"


def test_invalid_control_mode_rejected(client):
    response = client.post("/api/v1/control/mode", json={"mode": "turbo"})
    assert response.status_code == 422


def test_websocket_telemetry(client):
    with client.websocket_connect("/ws") as websocket:
        message = websocket.receive_json()
        assert message["type"] == "telemetry"
        assert message["data"]["control_mode"] == "state"

        websocket.send_json({"type": "control_mode", "mode": "raw"})
        websocket.send_json({"type": "telemetry"})

        message = receive_until(websocket, "telemetry")
        assert message["data"]["control_mode"] == "raw"
