from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from msp_config.api import app as api_module
from msp_config.io.simulator import SimulatedFC


@pytest.fixture
def fc(monkeypatch):
    monkeypatch.setattr("serial.tools.list_ports.comports", lambda: [])
    board = SimulatedFC()
    monkeypatch.setattr(api_module.manager, "sim_fc", board)
    return board


@pytest.fixture
def client(fc):
    with TestClient(api_module.app) as test_client:
        yield test_client


def _connect(client):
    response = client.post("/v1/connect", json={"simulate": True})
    assert response.status_code == 200, response.text
    return response.json()


def test_requests_without_connection_are_unavailable(client):
    response = client.get("/v1/modes")
    assert response.status_code == 503
    assert response.json()["error"] == "TransportClosedError"


def test_ports_lists_simulated_board(client):
    assert client.get("/v1/ports").json() == {"ports": []}
    ports = client.get("/v1/ports", params={"include_sim": True}).json()["ports"]
    assert [port["device"] for port in ports] == ["sim://fc"]
    assert ports[0]["simulated"] is True


def test_connect_identifies_firmware(client):
    body = _connect(client)
    assert body["port"] == "sim://fc"
    assert body["profile"] == "sim"
    assert body["firmware"]["fc_variant"] == "INAV"
    assert body["firmware"]["fc_version"] == "7.1.0"
    assert client.get("/v1/info").json()["connected"] is True


def test_unknown_profile_is_rejected(client):
    response = client.post("/v1/connect", json={"simulate": True, "profile": "nope"})
    assert response.status_code == 400


def test_modes_roundtrip(client, fc):
    _connect(client)
    body = client.get("/v1/modes").json()
    assert body["ranges"] == [
        {"index": 0, "box_id": 0, "aux_channel": 0, "range_start": 1700, "range_end": 2100}
    ]
    assert [box["name"] for box in body["boxes"]] == ["ARM", "ANGLE", "HORIZON", "NAV ALTHOLD"]

    response = client.put(
        "/v1/modes/1",
        json={"box_id": 1, "aux_channel": 1, "range_start": 1300, "range_end": 1700},
    )
    assert response.json() == {"ok": True, "detail": None}
    assert fc.mode_ranges[1] == [1, 1, 16, 32]


def test_features_write_and_mismatch(client, fc):
    _connect(client)
    assert client.put("/v1/features", json={"features": 0x20}).json()["ok"] is True
    body = client.get("/v1/features").json()
    assert body == {"features": 0x20, "hex": "0x00000020", "names": ["SERVO_TILT"]}

    fc.rejected_feature_bits = 1 << 7
    response = client.put("/v1/features", json={"features": 1 << 7})
    assert response.status_code == 422
    assert response.json()["error"] == "VerificationMismatchError"


def test_mixer_and_motor_rules(client):
    _connect(client)
    mixer = client.get("/v1/mixer").json()
    assert mixer["vehicle"] == "Multirotor"
    assert mixer["config"]["platform_name"] == "MULTIROTOR"
    rules = client.get("/v1/motor-mixer").json()["rules"]
    assert len(rules) == 4
    assert rules[0] == {"throttle": 1.0, "roll": -1.0, "pitch": 1.0, "yaw": -1.0}


def test_platform_change_and_save(client, fc):
    _connect(client)
    response = client.put("/v1/platform", json={"platform": 1})
    assert response.json()["ok"] is True
    assert fc.inav_mixer.platform_type == 1
    assert client.post("/v1/save").json()["ok"] is True
    assert fc.saved == 1


def test_log_and_disconnect(client):
    _connect(client)
    entries = client.get("/v1/log", params={"limit": 5}).json()["entries"]
    assert entries and len(entries) <= 5
    assert client.post("/v1/disconnect").json()["ok"] is True
    assert client.get("/v1/features").status_code == 503
