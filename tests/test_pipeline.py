import json
import math

import pytest

from ble_fusion_server.errors import ConfigPersistError
from ble_fusion_server.models import DeviceStatus, TagObservation
from ble_fusion_server.pipeline import PositioningEngine


GENERIC_TOPIC = "pilot/indoor/distances/tag-1"


def distances_from(x, y):
    anchors = {"A1": (0.0, 0.0), "A2": (10.0, 0.0), "A3": (0.0, 10.0)}
    return {a: math.hypot(x - ax, y - ay) for a, (ax, ay) in anchors.items()}


def generic_payload(tag_id="tag-1", point=(1.0, 1.0), floor=1, **extra):
    measurements = [{"anchor_id": a, "distance_m": d} for a, d in distances_from(*point).items()]
    return json.dumps({"tag_id": tag_id, "floor": floor, "measurements": measurements, **extra})


def test_end_to_end_restricted_corner(engine, broadcaster, upstream):
    engine.handle_message(GENERIC_TOPIC, generic_payload(tag_name="Worker 7"))

    device = engine.get_device("tag-1")
    assert device is not None
    assert device.x == pytest.approx(1.0, abs=0.01)
    assert device.y == pytest.approx(1.0, abs=0.01)
    assert device.confidence == pytest.approx(1.0)
    assert device.zone == "Server Room"
    assert device.zones == ["z-corner"]
    assert device.name == "Worker 7"
    assert device.geo.lat == pytest.approx(52.00001, abs=1e-8)
    assert device.geo.lon == pytest.approx(13.00001, abs=1e-8)

    alerts = engine.recent_alerts()
    assert len(alerts) == 1
    assert alerts[0].type.value == "zone_enter"
    assert alerts[0].severity.value == "critical"

    assert len(broadcaster.of("positions")) == 1
    assert broadcaster.of("zones")[0]["event"] == "enter"
    assert broadcaster.of("alerts")[0]["severity"] == "critical"

    (push,) = upstream.pushes
    assert push[0] == "unit-9"
    assert engine.stats()["messages"] == {"generic": 1}
    assert engine.stats()["positions_computed"] == 1


def test_unmapped_tag_is_pushed_under_its_own_id(engine, upstream):
    engine.handle_message("pilot/indoor/distances/x", generic_payload(tag_id="other"))
    assert engine.get_device("other") is not None
    (push,) = upstream.pushes
    assert push[0] == "other"


def test_push_carries_device_timestamp(engine, upstream, clock):
    engine.handle_message(GENERIC_TOPIC, generic_payload(timestamp=1600000000500))
    (push,) = upstream.pushes
    assert push[4] == pytest.approx(1600000000.5)
    assert engine.get_device("tag-1").last_update == clock()


def test_rejects_when_too_few_known_anchors(engine):
    payload = json.dumps(
        {
            "tag_id": "t",
            "measurements": [
                {"anchor_id": "A1", "distance_m": 2.0},
                {"anchor_id": "A2", "distance_m": 8.0},
                {"anchor_id": "ZZ", "distance_m": 3.0},
            ],
        }
    )
    engine.handle_message(GENERIC_TOPIC, payload)
    assert engine.get_device("t") is None
    assert engine.rejections["insufficient_anchors"] == 1


def test_anchors_on_other_floors_are_not_used(engine):
    engine.handle_message(GENERIC_TOPIC, generic_payload(floor=2))
    assert engine.get_device("tag-1") is None
    assert engine.rejections["insufficient_anchors"] == 1


def test_outlier_guard(engine):
    payload = json.dumps(
        {
            "tag_id": "t",
            "measurements": [
                {"anchor_id": "A1", "distance_m": 35.0},
                {"anchor_id": "A2", "distance_m": 30.0},
                {"anchor_id": "A3", "distance_m": 31.0},
            ],
        }
    )
    engine.handle_message(GENERIC_TOPIC, payload)
    assert engine.get_device("t") is None
    assert engine.rejections["outlier"] == 1


def test_adaptive_sampling_suppresses_jitter(engine, clock):
    engine.handle_message(GENERIC_TOPIC, generic_payload(point=(5.0, 5.0)))
    first_update = engine.get_device("tag-1").last_update

    clock.advance(1)
    engine.handle_message(GENERIC_TOPIC, generic_payload(point=(5.0, 5.0)))
    assert engine.get_device("tag-1").last_update == first_update
    assert engine.stats()["suppressed"] == 1

    clock.advance(5)
    engine.handle_message(GENERIC_TOPIC, generic_payload(point=(5.0, 5.0)))
    assert engine.get_device("tag-1").last_update == clock.now


def test_speed_without_kalman(config, broadcaster, clock):
    config.config["positioning"]["kalman_enabled"] = False
    engine = PositioningEngine(config, broadcaster=broadcaster, clock=clock)

    engine.handle_message(GENERIC_TOPIC, generic_payload(point=(1.0, 1.0)))
    clock.advance(2)
    engine.handle_message(GENERIC_TOPIC, generic_payload(point=(5.0, 5.0)))

    device = engine.get_device("tag-1")
    assert (device.x, device.y) == (pytest.approx(5.0), pytest.approx(5.0))
    # sqrt(32) m in 2 s
    assert device.speed == pytest.approx(math.sqrt(32) / 2 * 3.6, abs=0.1)
    # left the corner zone
    assert device.zone == ""
    assert [z["event"] for z in broadcaster.of("zones")] == ["enter", "exit"]


def test_sensor_only_frame_updates_cache(engine, broadcaster):
    engine.handle_message("gw-event/received_data/gw-1/tag-9/13", b"\x2a")
    device = engine.get_device("tag-9")
    assert device.battery == 42.0
    assert device.x is None
    assert broadcaster.of("positions")[0]["battery"] == 42.0
    assert engine.positions_computed == 0


def test_battery_from_node_health(engine):
    engine.handle_message("ela/tag-1/status", json.dumps({"battery": 12}))
    engine.handle_message(GENERIC_TOPIC, generic_payload())
    assert engine.get_device("tag-1").battery == 12


def test_malformed_message_never_raises(engine):
    engine.handle_message("wirepas/gw/received_data", b"\xff\xfe")
    engine.handle_message(GENERIC_TOPIC, b"[]")
    stats = engine.stats()
    assert stats["decode_errors"] == 2
    assert stats["last_error"] is not None


def test_unexpected_error_is_contained(engine, monkeypatch):
    def boom(obs):
        raise RuntimeError("solver exploded")

    monkeypatch.setattr(engine, "process_observation", boom)
    engine.handle_message(GENERIC_TOPIC, generic_payload())
    assert engine.last_error == "solver exploded"


def test_stale_sweep_marks_offline_and_alerts(engine, broadcaster, clock):
    engine.handle_message(GENERIC_TOPIC, generic_payload(point=(5.0, 5.0)))

    clock.advance(301)
    flipped = engine.sweep_stale()
    assert [d.id for d in flipped] == ["tag-1"]
    assert engine.get_device("tag-1").status is DeviceStatus.OFFLINE
    assert [a.type.value for a in engine.recent_alerts()] == ["offline"]
    assert broadcaster.of("positions")[-1]["status"] == "offline"
    # nothing new on the next sweep
    assert engine.sweep_stale() == []


def test_health_sweep(engine, clock):
    engine.handle_message("gw-event/status/gw-1", json.dumps({"status": "online"}))
    engine.handle_message("ela/tag-1/status", json.dumps({"battery": 3}))
    engine.handle_message(GENERIC_TOPIC, generic_payload(point=(5.0, 5.0)))

    fired = engine.sweep_health()
    assert [(a.type.value, a.severity.value) for a in fired] == [("low_battery", "critical")]
    # cooldown holds the second sweep back
    assert engine.sweep_health() == []

    clock.advance(400)
    engine.sweep_health()
    assert engine.list_gateways()[0]["status"] == "offline"


def test_broadcast_stats(engine, broadcaster):
    engine.broadcast_stats()
    (stats,) = broadcaster.of("stats")
    assert stats["devices_total"] == 0
    assert stats["anchors"] == 3


def test_update_floor_rebuilds_lookups(engine, config):
    floor = engine.update_floor(2, {"anchors": [{"id": "B1", "x": 0, "y": 0}, {"id": "B2", "x": 8, "y": 0}]})
    assert floor["id"] == 2
    assert sorted(engine.anchor_store.for_floor(2)) == ["B1", "B2"]

    reloaded = type(config)(config.config_file)
    assert len(reloaded.get_floors()[1]["anchors"]) == 2


def test_update_floor_calibration(engine):
    engine.update_floor(
        2,
        {
            "calibration": {
                "points": [
                    {"pixel": [0, 0], "geo": [48.0, 11.0]},
                    {"pixel": [10, 0], "geo": [48.0, 11.1]},
                    {"pixel": [0, 10], "geo": [48.1, 11.0]},
                ]
            }
        },
    )
    assert 2 in engine.calibrators
    assert {f["id"]: f["calibrated"] for f in engine.list_floors()} == {1: True, 2: True}


def test_update_unknown_floor(engine):
    with pytest.raises(KeyError):
        engine.update_floor(9, {"plan_url": "/x.png"})


def test_persist_failure_leaves_state_unchanged(engine, config, monkeypatch):
    def fail(*args, **kwargs):
        raise ConfigPersistError("disk full")

    monkeypatch.setattr(config, "save_config", fail)
    with pytest.raises(ConfigPersistError):
        engine.replace_zones([])
    with pytest.raises(ConfigPersistError):
        engine.update_floor(1, {"anchors": []})

    assert [z.id for z in engine.zones.zones] == ["z-corner"]
    assert len(engine.anchor_store.for_floor(1)) == 3


def test_replace_zones_resets_membership(engine):
    engine.handle_message(GENERIC_TOPIC, generic_payload())
    assert engine.list_zones()[0]["device_count"] == 1

    engine.replace_zones(
        [{"id": "z-new", "name": "Yard", "floor": 1, "polygon": [[0, 0], [10, 0], [10, 10], [0, 10]]}]
    )
    counts = engine.list_zones()
    assert [(z["id"], z["device_count"]) for z in counts] == [("z-new", 0)]


def test_remove_device(engine):
    engine.handle_message(GENERIC_TOPIC, generic_payload())
    assert engine.remove_device("tag-1")
    assert engine.get_device("tag-1") is None
    assert not engine.remove_device("tag-1")
    assert "tag-1" not in engine.filters


def test_engines_do_not_share_state(config, broadcaster, clock):
    a = PositioningEngine(config, broadcaster=broadcaster, clock=clock)
    b = PositioningEngine(config, broadcaster=type(broadcaster)(), clock=clock)
    a.handle_message(GENERIC_TOPIC, generic_payload())
    assert b.get_device("tag-1") is None
    assert b.recent_alerts() == []


def test_empty_observation_is_ignored(engine, broadcaster):
    assert engine.process_observation(TagObservation(tag_id="tag-1")) is None
    assert engine.get_device("tag-1") is None
    assert broadcaster.messages == []
