"""BLE Fusion Server package.

This package provides:
- ConfigManager: YAML-based configuration management
- ProtocolDecoder: gateway message decoding (JSON dialects and binary frames)
- PositioningEngine: trilateration, Kalman smoothing, zones, alerts and the device cache
- MQTTDataProcessor: MQTT ingestion
- create_app: admin HTTP API and WebSocket broadcast
"""

from .config_manager import ConfigManager
from .decoder import ProtocolDecoder
from .filters import KalmanFilter
from .pipeline import PositioningEngine
from .mqtt_processor import MQTTDataProcessor
from .api import create_app

__all__ = [
    "ConfigManager",
    "ProtocolDecoder",
    "KalmanFilter",
    "PositioningEngine",
    "MQTTDataProcessor",
    "create_app",
]
