import os

import pytest
import yaml

from ble_fusion_server.config_manager import ConfigManager
from ble_fusion_server.errors import ConfigPersistError


def test_missing_file_is_created_from_defaults(tmp_path):
    path = tmp_path / "config" / "config.yaml"
    cm = ConfigManager(str(path))
    assert path.exists()
    assert cm.get_positioning_config()["min_anchors"] == 3
    assert cm.get_topics()["binary"] == "gw-event/received_data/+/+/+"
    assert cm.get_floors() == []


def test_user_values_win_and_missing_keys_are_filled(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump({"positioning": {"min_anchors": 4}, "zones": [{"id": "z", "polygon": []}]}),
        encoding="utf-8",
    )
    cm = ConfigManager(str(path))
    pos = cm.get_positioning_config()
    assert pos["min_anchors"] == 4
    assert pos["max_distance_m"] == 30.0
    assert cm.get_alerts_config()["cooldown_s"] == 300.0
    assert cm.get_zones()[0]["id"] == "z"


def test_unreadable_yaml_falls_back_to_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("mqtt: [unclosed", encoding="utf-8")
    cm = ConfigManager(str(path))
    assert cm.get_api_config()["port"] == 3080


def test_env_override(tmp_path, monkeypatch):
    monkeypatch.setenv("BLE_FUSION_MQTT_BROKER", "mqtt://broker.local:1884")
    monkeypatch.setenv("BLE_FUSION_API_PORT", "8080")
    cm = ConfigManager(str(tmp_path / "config.yaml"))
    assert cm.get_mqtt_config()["broker"] == "mqtt://broker.local:1884"
    assert cm.get_api_config()["port"] == 8080


def test_replace_section_persists(tmp_path):
    path = tmp_path / "config.yaml"
    cm = ConfigManager(str(path))
    cm.set_zones([{"id": "z1", "name": "Dock", "polygon": [[0, 0], [1, 0], [1, 1]]}])
    reloaded = ConfigManager(str(path))
    assert reloaded.get_zones()[0]["name"] == "Dock"


def test_failed_write_keeps_memory_unchanged(tmp_path):
    cm = ConfigManager(str(tmp_path / "config.yaml"))
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    # a regular file where a directory is expected
    cm.config_file = os.path.join(str(blocker), "config.yaml")

    with pytest.raises(ConfigPersistError):
        cm.set_floors([{"id": 1}])
    assert cm.get_floors() == []


def test_tag_mappings(tmp_path):
    cm = ConfigManager(str(tmp_path / "config.yaml"))
    cm.config["tag_mappings"] = [
        {"tag_id": "t1", "unit_id": "u1"},
        {"tag_id": 2, "pilot_unit_id": 77},
        {"unit_id": "orphan"},
    ]
    assert cm.get_tag_mappings() == {"t1": "u1", "2": "77"}
