import pytest

from ble_fusion_server.config_manager import ConfigManager
from ble_fusion_server.pipeline import PositioningEngine


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingBroadcaster:
    client_count = 0

    def __init__(self):
        self.messages = []

    def publish(self, channel, data):
        self.messages.append((channel, data))

    def of(self, channel):
        return [d for c, d in self.messages if c == channel]


class RecordingUpstream:
    configured = True

    def __init__(self):
        self.pushes = []

    def push_async(self, unit_id, lat, lon, speed=None, timestamp=None):
        self.pushes.append((unit_id, lat, lon, speed, timestamp))


FLOORS = [
    {
        "id": 1,
        "name": "Ground floor",
        "plan_url": "/plans/ground.png",
        "anchors": [
            {"id": "A1", "x": 0.0, "y": 0.0},
            {"id": "A2", "x": 10.0, "y": 0.0},
            {"id": "A3", "x": 0.0, "y": 10.0},
        ],
        # lat = 52 + y * 1e-5, lon = 13 + x * 1e-5
        "calibration": {
            "points": [
                {"pixel": [0, 0], "geo": [52.0, 13.0]},
                {"pixel": [100, 0], "geo": [52.0, 13.001]},
                {"pixel": [0, 100], "geo": [52.001, 13.0]},
            ]
        },
    },
    {"id": 2, "name": "First floor", "anchors": []},
]

ZONES = [
    {
        "id": "z-corner",
        "name": "Server Room",
        "floor": 1,
        "type": "restricted",
        "polygon": [[0, 0], [3, 0], [3, 3], [0, 3]],
    }
]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(tmp_path):
    cm = ConfigManager(str(tmp_path / "config.yaml"))
    cm.config["floors"] = [dict(f) for f in FLOORS]
    cm.config["zones"] = [dict(z) for z in ZONES]
    cm.config["positioning"]["kalman_enabled"] = True
    cm.config["tag_mappings"] = [{"tag_id": "tag-1", "unit_id": "unit-9"}]
    cm.save_config()
    return cm


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def upstream():
    return RecordingUpstream()


@pytest.fixture
def engine(config, broadcaster, upstream, clock):
    return PositioningEngine(config, broadcaster=broadcaster, upstream=upstream, clock=clock)
