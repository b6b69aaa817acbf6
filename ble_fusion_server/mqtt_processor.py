from __future__ import annotations

import logging
from typing import List, Optional
from urllib.parse import urlparse

import paho.mqtt.client as mqtt
from paho.mqtt.client import MQTTMessage

from .config_manager import ConfigManager
from .pipeline import PositioningEngine


logger = logging.getLogger(__name__)

DEFAULT_PORT = 1883


class MQTTDataProcessor:
    """Subscribes to the gateway topics and feeds every message to the engine."""

    def __init__(self, config_manager: ConfigManager, engine: PositioningEngine):
        self.config_manager = config_manager
        self.engine = engine
        self.client: Optional[mqtt.Client] = None
        self.connected = False

    @property
    def topics(self) -> List[str]:
        return self.engine.decoder.subscriptions

    # ---------- MQTT ----------
    def _create_client(self) -> mqtt.Client:
        cfg = self.config_manager.get_mqtt_config()
        client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=cfg.get("client_id") or "")
        if cfg.get("username"):
            client.username_pw_set(cfg["username"], cfg.get("password") or None)
        client.reconnect_delay_set(
            min_delay=int(cfg.get("reconnect_min_delay_s", 1)),
            max_delay=int(cfg.get("reconnect_max_delay_s", 60)),
        )
        client.on_connect = self.on_connect
        client.on_disconnect = self.on_disconnect
        client.on_message = self.on_message
        return client

    @staticmethod
    def parse_broker_url(url: str) -> tuple[str, int]:
        if "://" not in url:
            url = "mqtt://" + url
        parsed = urlparse(url)
        return parsed.hostname or "localhost", parsed.port or DEFAULT_PORT

    def connect(self) -> None:
        """Connect once; raises OSError if the broker is unreachable."""
        cfg = self.config_manager.get_mqtt_config()
        host, port = self.parse_broker_url(cfg.get("broker", "mqtt://localhost:1883"))
        self.client = self._create_client()
        self.client.connect(host, port, int(cfg.get("keepalive", 60)))
        logger.info("Connecting to MQTT broker %s:%s", host, port)

    def start_mqtt_client(self) -> None:
        """Blocking network loop; paho reconnects with backoff after the first connect."""
        if self.client is None:
            self.connect()
        self.client.loop_forever(retry_first_connection=False)

    def stop_mqtt_client(self) -> None:
        if self.client is not None:
            self.client.disconnect()
            self.client.loop_stop()
            logger.info("MQTT connection closed")

    # ---------- MQTT handlers ----------
    def on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            logger.error("MQTT connection refused: %s", reason_code)
            return
        self.connected = True
        logger.info("Connected to MQTT broker")
        # subscriptions are lost on reconnect, so always resubscribe
        for topic in self.topics:
            client.subscribe(topic)
            logger.info("Subscribed to %s", topic)

    def on_disconnect(self, client, userdata, flags, reason_code, properties):
        self.connected = False
        if reason_code.is_failure:
            logger.warning("MQTT connection lost (%s), reconnecting", reason_code)

    def on_message(self, client, userdata, msg: MQTTMessage):
        self.engine.handle_message(msg.topic, msg.payload)
