import json
from types import SimpleNamespace

from ble_fusion_server.mqtt_processor import MQTTDataProcessor


class FakeClient:
    def __init__(self):
        self.subscribed = []

    def subscribe(self, topic):
        self.subscribed.append(topic)


def test_parse_broker_url():
    assert MQTTDataProcessor.parse_broker_url("mqtt://broker.local:1884") == ("broker.local", 1884)
    assert MQTTDataProcessor.parse_broker_url("mqtt://broker.local") == ("broker.local", 1883)
    assert MQTTDataProcessor.parse_broker_url("10.0.0.5:2883") == ("10.0.0.5", 2883)


def test_subscribes_to_every_pattern_on_connect(config, engine):
    processor = MQTTDataProcessor(config, engine)
    client = FakeClient()
    processor.on_connect(client, None, None, SimpleNamespace(is_failure=False), None)
    assert processor.connected
    assert sorted(client.subscribed) == sorted(config.get_topics().values())


def test_refused_connection_does_not_subscribe(config, engine):
    processor = MQTTDataProcessor(config, engine)
    client = FakeClient()
    processor.on_connect(client, None, None, SimpleNamespace(is_failure=True), None)
    assert client.subscribed == []
    assert not processor.connected


def test_message_is_handed_to_engine(config, engine):
    processor = MQTTDataProcessor(config, engine)
    msg = SimpleNamespace(topic="ela/tag-1/status", payload=json.dumps({"battery": 50}).encode())
    processor.on_message(None, None, msg)
    assert engine.decoder.node_battery("tag-1") == 50
    assert engine.stats()["messages"] == {"node_status": 1}
