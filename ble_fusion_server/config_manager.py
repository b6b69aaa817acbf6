from __future__ import annotations

import copy
import logging
import os
import yaml

from typing import Callable, Any, Dict, List, Optional

from .errors import ConfigPersistError


logger = logging.getLogger(__name__)


def _env_or_default(env_key: str, default: Any, cast: Callable[[str], Any] = str) -> Any:
    v = os.environ.get(env_key)
    if v is not None:
        try:
            return cast(v)
        except Exception:
            return v
    return default


def _as_bool(v: str) -> bool:
    return v.lower() in ("1", "true", "yes")


DEFAULT_CONFIG_PATH = _env_or_default(
    "BLE_FUSION_CONFIG",
    os.path.join(".", "config", "config.yaml"),
)


class ConfigManager:
    """Reads and writes the YAML configuration file."""

    def __init__(self, config_file: str | None = None):
        self.config_file = config_file or DEFAULT_CONFIG_PATH
        self.default_config = {
            "mqtt": {
                "broker": _env_or_default("BLE_FUSION_MQTT_BROKER", "mqtt://localhost:1883"),
                "username": _env_or_default("BLE_FUSION_MQTT_USERNAME", ""),
                "password": _env_or_default("BLE_FUSION_MQTT_PASSWORD", ""),
                "client_id": _env_or_default("BLE_FUSION_MQTT_CLIENT_ID", "ble-fusion-server"),
                "keepalive": 60,
                "reconnect_min_delay_s": 1,
                "reconnect_max_delay_s": 60,
                "topics": {
                    "gateway_status": "gw-event/status/+",
                    "node_status": "ela/+/status",
                    "wnt": "wirepas/+/received_data",
                    "ela": "ela/+/data",
                    "binary": "gw-event/received_data/+/+/+",
                    "generic": "pilot/indoor/distances/+",
                },
            },
            "upstream": {
                "api_url": _env_or_default("BLE_FUSION_UPSTREAM_URL", ""),
                "api_key": _env_or_default("BLE_FUSION_UPSTREAM_KEY", ""),
                "timeout_s": _env_or_default("BLE_FUSION_UPSTREAM_TIMEOUT", 5.0, float),
                "workers": 2,
            },
            "api": {
                "host": _env_or_default("BLE_FUSION_API_HOST", "0.0.0.0"),
                "port": _env_or_default("BLE_FUSION_API_PORT", 3080, int),
            },
            "positioning": {
                "min_anchors": 3,
                "max_distance_m": 30.0,
                "kalman_enabled": _env_or_default("BLE_FUSION_KALMAN", True, _as_bool),
                "process_noise": 0.5,
                "measurement_noise": 1.0,
                # assumed seconds between fixes; Kalman velocity (and speed alerts) scale with it
                "dt": 1.0,
            },
            "decoder": {
                "min_confidence": 0.6,
                "max_range_m": 30.0,
                "tx_power": -59.0,
                "path_loss_exponent": 2.5,
                "gateway_timeout_s": 300,
            },
            "sampling": {
                "movement_threshold_m": 0.5,
                "moving_interval_s": 5.0,
                "stationary_interval_s": 300.0,
                "idle_s": 60.0,
            },
            "alerts": {
                "battery_warning": 15.0,
                "battery_critical": 5.0,
                "offline_timeout_s": 300.0,
                "speed_limit_kmh": 40.0,
                "cooldown_s": 300.0,
                "max_recent": 100,
            },
            "intervals": {
                "stale_sweep_s": 30.0,
                "health_sweep_s": 60.0,
                "stats_s": 10.0,
            },
            "paths": {
                "anchor_csv": _env_or_default("BLE_FUSION_ANCHOR_CSV", ""),
            },
            "floors": [],
            "zones": [],
            "tag_mappings": [],
        }
        self.load_config()

    def load_config(self) -> None:
        """Load the config file, creating it from defaults when missing."""
        try:
            if os.path.exists(self.config_file):
                with open(self.config_file, "r", encoding="utf-8") as f:
                    self.config = yaml.safe_load(f) or {}
                self._merge_default_config()
                return
        except (OSError, yaml.YAMLError) as e:
            logger.error("Failed to read %s, using defaults: %s", self.config_file, e)
        # unreadable or missing: fall back to defaults
        self.config = copy.deepcopy(self.default_config)
        try:
            self.save_config()
        except ConfigPersistError as e:
            logger.warning("Could not write default configuration: %s", e)

    def _merge_default_config(self) -> None:
        def merge_dict(default, current):
            for key, value in default.items():
                if key not in current:
                    current[key] = copy.deepcopy(value)
                elif isinstance(value, dict) and isinstance(current[key], dict):
                    merge_dict(value, current[key])

        merge_dict(self.default_config, self.config)

    def save_config(self, config: Optional[Dict[str, Any]] = None) -> None:
        """Write ``config`` (default: the current one). Raises ConfigPersistError."""
        data = self.config if config is None else config
        try:
            os.makedirs(os.path.dirname(self.config_file) or ".", exist_ok=True)
            with open(self.config_file, "w", encoding="utf-8") as f:
                yaml.dump(
                    data,
                    f,
                    default_flow_style=False,
                    allow_unicode=True,
                    indent=2,
                    sort_keys=False,
                )
        except (OSError, yaml.YAMLError) as e:
            raise ConfigPersistError(f"cannot write {self.config_file}: {e}") from e

    def replace_section(self, key: str, value: Any) -> None:
        """Persist ``value`` under ``key`` and only then adopt it in memory."""
        candidate = copy.deepcopy(self.config)
        candidate[key] = value
        self.save_config(candidate)
        self.config = candidate

    # ---------- Accessors ----------
    def get_mqtt_config(self) -> Dict[str, Any]:
        return self.config["mqtt"]

    def get_topics(self) -> Dict[str, str]:
        return self.config["mqtt"].get("topics", {})

    def get_upstream_config(self) -> Dict[str, Any]:
        return self.config["upstream"]

    def get_api_config(self) -> Dict[str, Any]:
        return self.config["api"]

    def get_positioning_config(self) -> Dict[str, Any]:
        return self.config["positioning"]

    def get_decoder_config(self) -> Dict[str, Any]:
        return self.config["decoder"]

    def get_sampling_config(self) -> Dict[str, Any]:
        return self.config["sampling"]

    def get_alerts_config(self) -> Dict[str, Any]:
        return self.config["alerts"]

    def get_intervals(self) -> Dict[str, Any]:
        return self.config["intervals"]

    def get_paths(self) -> Dict[str, Any]:
        return self.config.get("paths", {})

    def get_anchor_csv_path(self) -> str:
        return self.get_paths().get("anchor_csv") or ""

    def get_floors(self) -> List[Dict[str, Any]]:
        return self.config.get("floors") or []

    def get_zones(self) -> List[Dict[str, Any]]:
        return self.config.get("zones") or []

    def get_tag_mappings(self) -> Dict[str, str]:
        return {
            str(m["tag_id"]): str(m.get("unit_id") or m.get("pilot_unit_id"))
            for m in self.config.get("tag_mappings") or []
            if "tag_id" in m
        }

    def set_floors(self, floors: List[Dict[str, Any]]) -> None:
        self.replace_section("floors", floors)

    def set_zones(self, zones: List[Dict[str, Any]]) -> None:
        self.replace_section("zones", zones)
