import json
import math

import pytest
from fastapi.testclient import TestClient

from ble_fusion_server.api import create_app
from ble_fusion_server.errors import ConfigPersistError
from ble_fusion_server.pipeline import PositioningEngine


def corner_payload(tag_id="tag-1"):
    measurements = [
        {"anchor_id": "A1", "distance_m": math.sqrt(2)},
        {"anchor_id": "A2", "distance_m": math.sqrt(82)},
        {"anchor_id": "A3", "distance_m": math.sqrt(82)},
    ]
    return json.dumps({"tag_id": tag_id, "measurements": measurements})


@pytest.fixture
def api_engine(config, clock):
    return PositioningEngine(config, clock=clock)


@pytest.fixture
def client(api_engine):
    with TestClient(create_app(api_engine)) as c:
        yield c


def test_devices(client, api_engine):
    api_engine.handle_message("pilot/indoor/distances/tag-1", corner_payload())

    body = client.get("/api/indoor/devices").json()
    assert body["count"] == 1
    assert body["devices"][0]["zone"] == "Server Room"

    assert client.get("/api/indoor/devices", params={"floor": 2}).json()["count"] == 0
    assert client.get("/api/indoor/devices/tag-1").json()["status"] == "online"
    assert client.get("/api/indoor/devices/nope").status_code == 404

    assert client.delete("/api/indoor/devices/tag-1").json() == {"removed": "tag-1"}
    assert client.delete("/api/indoor/devices/tag-1").status_code == 404


def test_floors(client, api_engine):
    floors = client.get("/api/indoor/floors").json()["floors"]
    assert [f["id"] for f in floors] == [1, 2]
    assert floors[0]["calibrated"] is True

    r = client.put("/api/indoor/floors/2", json={"planUrl": "/plans/first.png", "anchors": [{"id": "B1", "x": 1, "y": 2}]})
    assert r.status_code == 200
    assert r.json()["floor"]["plan_url"] == "/plans/first.png"
    assert "B1" in api_engine.anchor_store.for_floor(2)

    assert client.put("/api/indoor/floors/9", json={"name": "ghost"}).status_code == 404


def test_zones(client, api_engine):
    api_engine.handle_message("pilot/indoor/distances/tag-1", corner_payload())
    zones = client.get("/api/indoor/zones").json()["zones"]
    assert zones[0]["device_count"] == 1

    new_zones = [
        {"id": "yard", "name": "Yard", "type": "general", "polygon": [[0, 0], [20, 0], [20, 20]], "alertOnExit": False}
    ]
    assert client.put("/api/indoor/zones", json=new_zones).json() == {"count": 1}
    zones = client.get("/api/indoor/zones").json()["zones"]
    assert zones[0]["id"] == "yard"
    assert zones[0]["alert_on_exit"] is False
    assert zones[0]["device_count"] == 0


def test_zone_validation(client):
    bad = [{"id": "z", "name": "Z", "polygon": [[0, 0], [1, 1]]}]
    assert client.put("/api/indoor/zones", json=bad).status_code == 422


def test_persist_failure_is_a_500(client, config, api_engine, monkeypatch):
    def fail(*args, **kwargs):
        raise ConfigPersistError("read-only file system")

    monkeypatch.setattr(config, "save_config", fail)
    zones = [{"id": "z", "name": "Z", "polygon": [[0, 0], [1, 0], [1, 1]]}]
    r = client.put("/api/indoor/zones", json=zones)
    assert r.status_code == 500
    assert "read-only" in r.json()["detail"]
    assert client.put("/api/indoor/floors/1", json={"name": "x"}).status_code == 500
    assert [z.id for z in api_engine.zones.zones] == ["z-corner"]


def test_alerts_gateways_anchors_stats(client, api_engine):
    api_engine.handle_message("gw-event/status/gw-1", json.dumps({"firmware": "1.0"}))
    api_engine.handle_message("pilot/indoor/distances/tag-1", corner_payload())

    alerts = client.get("/api/indoor/alerts", params={"limit": 5}).json()["alerts"]
    assert [a["type"] for a in alerts] == ["zone_enter"]
    assert client.get("/api/indoor/alerts", params={"limit": 0}).status_code == 422

    assert client.get("/api/indoor/gateways").json()["gateways"][0]["gateway_id"] == "gw-1"
    assert len(client.get("/api/indoor/anchors").json()["anchors"]) == 3

    stats = client.get("/api/indoor/stats").json()
    assert stats["positions_computed"] == 1
    assert stats["messages"] == {"gateway_status": 1, "generic": 1}

    health = client.get("/api/indoor/health").json()
    assert health["status"] == "ok"
    assert health["devices"] == 1


def test_websocket_channels(client, api_engine):
    with client.websocket_connect("/ws") as ws:
        welcome = ws.receive_json()
        assert welcome["type"] == "welcome"
        assert welcome["data"]["subscribed"] == ["positions"]

        ws.send_json({"type": "subscribe", "channels": ["stats", "bogus"]})
        assert ws.receive_json() == {"type": "subscribed", "data": {"channels": ["positions", "stats"]}}

        api_engine.broadcast_stats()
        msg = ws.receive_json()
        assert msg["type"] == "stats"
        assert msg["data"]["ws_clients"] == 1

        ws.send_json({"type": "unsubscribe", "channels": ["stats"]})
        assert ws.receive_json()["data"]["channels"] == ["positions"]

        api_engine.handle_message("pilot/indoor/distances/tag-2", corner_payload("tag-2"))
        msg = ws.receive_json()
        assert msg["type"] == "positions"
        assert msg["data"]["id"] == "tag-2"

        ws.send_text("not json")
        assert ws.receive_json()["type"] == "error"
