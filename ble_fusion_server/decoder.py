from __future__ import annotations

import json
import logging
import math
import struct
import time
from typing import Any, Callable, Dict, List, Optional

from paho.mqtt.client import topic_matches_sub

from .anchor_store import AnchorStore
from .errors import DecodeError
from .models import (
    DecodedMessage,
    GatewayHealth,
    Measurement,
    MeasurementMethod,
    MessageKind,
    NodeHealth,
    RangingReport,
    SensorReadings,
    TagObservation,
)


logger = logging.getLogger(__name__)

DEFAULT_TOPICS: Dict[str, str] = {
    MessageKind.GATEWAY_STATUS.value: "gw-event/status/+",
    MessageKind.NODE_STATUS.value: "ela/+/status",
    MessageKind.WNT.value: "wirepas/+/received_data",
    MessageKind.ELA.value: "ela/+/data",
    MessageKind.BINARY.value: "gw-event/received_data/+/+/+",
    MessageKind.GENERIC.value: "pilot/indoor/distances/+",
}

# most specific first; anything unmatched is treated as the generic format
_CLASSIFY_ORDER = [
    MessageKind.GATEWAY_STATUS,
    MessageKind.NODE_STATUS,
    MessageKind.BINARY,
    MessageKind.WNT,
    MessageKind.ELA,
    MessageKind.GENERIC,
]

# binary endpoints
ENDPOINT_RANGING = 238
ENDPOINT_TEMPERATURE = 10
ENDPOINT_HUMIDITY = 11
ENDPOINT_MOTION = 12
ENDPOINT_BATTERY = 13

FRAME_HEADER = struct.Struct("<BB")  # version, neighbour count
NEIGHBOR_RECORD = struct.Struct("<Ib")  # address, rssi
TEMPERATURE = struct.Struct("<h")
HUMIDITY = struct.Struct("<H")

DEFAULT_FLOOR = 1


def rssi_to_distance(rssi: float, tx_power: float, path_loss_exponent: float) -> float:
    """Log-distance path-loss model, meters."""
    return math.pow(10, (tx_power - rssi) / (10.0 * path_loss_exponent))


def _first(d: Dict[str, Any], *keys: str) -> Any:
    for k in keys:
        v = d.get(k)
        if v is not None:
            return v
    return None


def _records(d: Dict[str, Any], source: str, *keys: str) -> List[Dict[str, Any]]:
    """The object entries of the first list found under ``keys``; anything else in it is skipped."""
    value = _first(d, *keys)
    if value is None:
        return []
    if not isinstance(value, list):
        raise DecodeError(source, f"{keys[0]} must be a list")
    return [v for v in value if isinstance(v, dict)]


def _as_int(v: Any, default: int) -> int:
    try:
        return int(v)
    except (TypeError, ValueError):
        return default


def _as_float(v: Any) -> Optional[float]:
    try:
        return float(v) if v is not None else None
    except (TypeError, ValueError):
        return None


class ProtocolDecoder:
    """
    Decodes gateway MQTT traffic into tag observations and health updates.

    Besides decoding, it keeps the gateway and node-health registries and
    registers anchors announced by node status messages. It never touches
    the device cache.
    """

    def __init__(
        self,
        anchor_store: AnchorStore,
        topics: Optional[Dict[str, str]] = None,
        min_confidence: float = 0.6,
        max_range_m: float = 30.0,
        tx_power: float = -59.0,
        path_loss_exponent: float = 2.5,
        gateway_timeout_s: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self.anchor_store = anchor_store
        topics = {**DEFAULT_TOPICS, **(topics or {})}
        self._patterns = [(kind, topics[kind.value]) for kind in _CLASSIFY_ORDER if topics.get(kind.value)]
        self._kind_cache: Dict[str, MessageKind] = {}

        self.min_confidence = min_confidence
        self.max_range_m = max_range_m
        self.tx_power = tx_power
        self.path_loss_exponent = path_loss_exponent
        self.gateway_timeout_s = gateway_timeout_s
        self._clock = clock

        self.gateways: Dict[str, GatewayHealth] = {}
        self.nodes: Dict[str, NodeHealth] = {}
        self.decode_errors = 0

    @property
    def subscriptions(self) -> List[str]:
        return [pattern for _, pattern in self._patterns]

    # ---------- Classification ----------
    def classify(self, topic: str) -> MessageKind:
        kind = self._kind_cache.get(topic)
        if kind is None:
            kind = MessageKind.GENERIC
            for candidate, pattern in self._patterns:
                if topic_matches_sub(pattern, topic):
                    kind = candidate
                    break
            self._kind_cache[topic] = kind
        return kind

    def decode(self, topic: str, payload: bytes | str) -> Optional[DecodedMessage]:
        """Decode one message. Malformed payloads are logged and yield None."""
        kind = self.classify(topic)
        try:
            match kind:
                case MessageKind.BINARY:
                    observation = self.parse_binary(topic, self._as_bytes(payload))
                    return RangingReport(kind, (observation,))
                case MessageKind.GATEWAY_STATUS:
                    return self._gateway_status(topic, self._load_json(topic, payload))
                case MessageKind.NODE_STATUS:
                    return self._node_status(topic, self._load_json(topic, payload))
                case MessageKind.WNT:
                    return RangingReport(kind, tuple(self.parse_wnt(self._load_json(topic, payload))))
                case MessageKind.ELA:
                    return RangingReport(kind, tuple(self.parse_ela(self._load_json(topic, payload))))
                case _:
                    return RangingReport(kind, tuple(self.parse_generic(self._load_json(topic, payload))))
        except DecodeError as e:
            self.decode_errors += 1
            logger.warning("Discarding malformed message: %s", e)
            return None

    @staticmethod
    def _as_bytes(payload: bytes | str) -> bytes:
        return payload.encode("utf-8") if isinstance(payload, str) else bytes(payload)

    @staticmethod
    def _load_json(topic: str, payload: bytes | str) -> Any:
        try:
            text = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else payload
            return json.loads(text)
        except (UnicodeDecodeError, ValueError) as e:
            raise DecodeError(topic, f"invalid JSON ({e})") from e

    def _timestamp(self, value: Any) -> float:
        ts = _as_float(value)
        if ts is None or ts <= 0:
            return self._clock()
        # milliseconds since epoch
        return ts / 1000.0 if ts > 1e12 else ts

    # ---------- Distances ----------
    def _rssi_measurement(
        self, anchor_id: str, rssi: Any, tx_power: Any = None, quality: Optional[float] = None
    ) -> Optional[Measurement]:
        rssi_f = _as_float(rssi)
        if rssi_f is None or rssi_f == 0:
            return None
        ref = _as_float(tx_power)
        dist = rssi_to_distance(rssi_f, ref if ref is not None else self.tx_power, self.path_loss_exponent)
        if quality is None:
            quality = max(0.1, min(0.8, 1 - abs(rssi_f + 40) / 60))
        return Measurement(
            anchor_id=anchor_id,
            distance_m=min(dist, self.max_range_m),
            quality=quality,
            method=MeasurementMethod.RSSI,
        )

    # ---------- JSON dialects ----------
    def parse_wnt(self, payload: Any) -> List[TagObservation]:
        """Wirepas network tool JSON, one object or a list of them."""
        items = payload if isinstance(payload, list) else [payload]
        results: List[TagObservation] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            tag_id = _first(item, "source_address", "src", "node_id")
            if tag_id is None:
                continue

            measurements: List[Measurement] = []
            for a in _records(item, "wnt", "positioning_data", "neighbors"):
                anchor_id = _first(a, "address", "anchor_id", "node_address")
                if anchor_id is None:
                    continue
                anchor_id = str(anchor_id)
                distance = _as_float(_first(a, "distance_m", "distance"))
                confidence = _as_float(a.get("cs_confidence"))
                if (
                    distance is not None
                    and 0 < distance <= self.max_range_m
                    and (confidence or 0.0) >= self.min_confidence
                ):
                    measurements.append(
                        Measurement(anchor_id, distance, confidence, MeasurementMethod.DIRECT)
                    )
                    continue
                m = self._rssi_measurement(anchor_id, _first(a, "rss", "rssi"), a.get("tx_power"))
                if m is not None:
                    measurements.append(m)

            motion = None
            if item.get("motion") is not None or item.get("accelerometer") is not None:
                motion = bool(item.get("motion", True))
            sensors = SensorReadings(
                battery=_as_float(item.get("battery")),
                temperature=_as_float(item.get("temperature")),
                humidity=_as_float(item.get("humidity")),
                motion=motion,
            )
            results.append(
                TagObservation(
                    tag_id=str(tag_id),
                    measurements=tuple(measurements),
                    sensors=sensors,
                    floor=_as_int(_first(item, "floor_id", "floor"), DEFAULT_FLOOR),
                    name=_first(item, "tag_name", "name"),
                    device_type=item.get("device_type"),
                    timestamp=self._timestamp(item.get("timestamp")),
                )
            )
        return results

    def parse_ela(self, payload: Any) -> List[TagObservation]:
        """ELA gateway JSON: ``{"devices": [...]}``, a bare list, or one device."""
        if isinstance(payload, dict) and isinstance(payload.get("devices"), list):
            items = payload["devices"]
        elif isinstance(payload, list):
            items = payload
        else:
            items = [payload]

        results: List[TagObservation] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            tag_id = _first(item, "mac", "id", "device_id")
            if tag_id is None:
                continue

            measurements: List[Measurement] = []
            for b in _records(item, "ela", "beacons", "anchors", "scan_results"):
                anchor_id = _first(b, "mac", "id", "anchor_id")
                if anchor_id is None:
                    continue
                anchor_id = str(anchor_id)
                distance = _as_float(_first(b, "distance_m", "distance"))
                if distance is not None and 0 < distance <= self.max_range_m:
                    quality = _as_float(b.get("quality")) or 0.9
                    measurements.append(Measurement(anchor_id, distance, quality, MeasurementMethod.DIRECT))
                    continue
                m = self._rssi_measurement(anchor_id, b.get("rssi"), b.get("tx_power"), quality=0.5)
                if m is not None:
                    measurements.append(m)

            movement = item.get("movement")
            sensors = SensorReadings(
                battery=_as_float(_first(item, "battery", "battery_level")),
                temperature=_as_float(item.get("temperature")),
                humidity=_as_float(item.get("humidity")),
                motion=bool(movement) if movement is not None else None,
            )
            results.append(
                TagObservation(
                    tag_id=str(tag_id),
                    measurements=tuple(measurements),
                    sensors=sensors,
                    floor=_as_int(item.get("floor"), DEFAULT_FLOOR),
                    name=_first(item, "name", "label"),
                    device_type=item.get("type"),
                    timestamp=self._timestamp(item.get("timestamp")),
                )
            )
        return results

    def parse_generic(self, payload: Any) -> List[TagObservation]:
        if not isinstance(payload, dict):
            raise DecodeError("generic", "expected a JSON object")
        tag_id = _first(payload, "tag_id", "tagId")
        if tag_id is None:
            raise DecodeError("generic", "missing tag_id")

        measurements: List[Measurement] = []
        for m in _records(payload, "generic", "measurements"):
            if m.get("anchor_id") is None:
                continue
            anchor_id = str(m["anchor_id"])
            distance = _as_float(m.get("distance_m"))
            if distance is None:
                rssi_m = self._rssi_measurement(anchor_id, m.get("rssi"), m.get("tx_power"))
                if rssi_m is not None:
                    measurements.append(rssi_m)
                continue
            method = (
                MeasurementMethod.RSSI
                if m.get("method") in ("rssi", MeasurementMethod.RSSI.value)
                else MeasurementMethod.DIRECT
            )
            quality = _as_float(m.get("quality"))
            measurements.append(Measurement(anchor_id, distance, quality if quality is not None else 0.9, method))

        return [
            TagObservation(
                tag_id=str(tag_id),
                measurements=tuple(measurements),
                floor=_as_int(payload.get("floor"), DEFAULT_FLOOR),
                name=_first(payload, "tag_name", "tagName"),
                device_type=payload.get("type"),
                timestamp=self._timestamp(payload.get("timestamp")),
            )
        ]

    # ---------- Binary frames ----------
    def parse_binary(self, topic: str, payload: bytes) -> TagObservation:
        """
        ``gw-event/received_data/<gateway>/<source>/<endpoint>``

        The endpoint number selects the payload layout: a ranging report
        (version, count, then ``count`` x [u32 address LE, i8 rssi]) or one
        of the small fixed-width sensor encodings.
        """
        parts = topic.split("/")
        if len(parts) < 5:
            raise DecodeError(topic, "binary topic needs gateway/source/endpoint")
        gateway_id, source, endpoint_s = parts[-3], parts[-2], parts[-1]
        try:
            endpoint = int(endpoint_s)
        except ValueError as e:
            raise DecodeError(topic, f"bad endpoint {endpoint_s!r}") from e

        self._touch_gateway(gateway_id)
        node = self.nodes.get(source)
        floor = node.floor if node and node.floor is not None else DEFAULT_FLOOR
        now = self._clock()

        if endpoint == ENDPOINT_RANGING:
            return TagObservation(
                tag_id=source,
                measurements=tuple(self._decode_neighbors(topic, payload)),
                floor=floor,
                timestamp=now,
            )

        sensors = self._decode_sensor(topic, endpoint, payload)
        return TagObservation(tag_id=source, sensors=sensors, floor=floor, timestamp=now)

    def _decode_neighbors(self, topic: str, payload: bytes) -> List[Measurement]:
        if len(payload) < FRAME_HEADER.size:
            raise DecodeError(topic, f"frame too short ({len(payload)} bytes)")
        _version, count = FRAME_HEADER.unpack_from(payload, 0)
        expected = FRAME_HEADER.size + count * NEIGHBOR_RECORD.size
        if len(payload) < expected:
            raise DecodeError(topic, f"frame truncated: {len(payload)} < {expected} bytes")

        measurements: List[Measurement] = []
        for i in range(count):
            address, rssi = NEIGHBOR_RECORD.unpack_from(payload, FRAME_HEADER.size + i * NEIGHBOR_RECORD.size)
            m = self._rssi_measurement(str(address), rssi)
            if m is not None:
                measurements.append(m)
        return measurements

    @staticmethod
    def _decode_sensor(topic: str, endpoint: int, payload: bytes) -> SensorReadings:
        try:
            if endpoint == ENDPOINT_TEMPERATURE:
                (raw,) = TEMPERATURE.unpack_from(payload, 0)
                return SensorReadings(temperature=raw / 100.0)
            if endpoint == ENDPOINT_HUMIDITY:
                (raw,) = HUMIDITY.unpack_from(payload, 0)
                return SensorReadings(humidity=raw / 100.0)
            if endpoint == ENDPOINT_MOTION:
                return SensorReadings(motion=bool(payload[0]))
            if endpoint == ENDPOINT_BATTERY:
                return SensorReadings(battery=float(payload[0]))
        except (struct.error, IndexError) as e:
            raise DecodeError(topic, f"sensor payload too short for endpoint {endpoint}") from e
        raise DecodeError(topic, f"unknown endpoint {endpoint}")

    # ---------- Status messages ----------
    def _touch_gateway(self, gateway_id: str) -> None:
        gw = self.gateways.get(gateway_id)
        if gw is None:
            gw = self.gateways[gateway_id] = GatewayHealth(gateway_id=gateway_id)
            logger.info("New gateway seen: %s", gateway_id)
        elif gw.status != "online":
            logger.info("Gateway %s is back online", gateway_id)
        gw.status = "online"
        gw.last_seen = self._clock()

    def _gateway_status(self, topic: str, data: Any) -> GatewayHealth:
        if not isinstance(data, dict):
            raise DecodeError(topic, "gateway status must be a JSON object")
        gateway_id = str(_first(data, "gateway_id", "gw_id") or topic.rsplit("/", 1)[-1])
        self._touch_gateway(gateway_id)
        gw = self.gateways[gateway_id]

        status = str(data.get("status") or "online").lower()
        gw.status = "online" if status in ("online", "ok", "up", "connected") else status
        gw.uptime_s = _as_float(_first(data, "uptime_s", "uptime")) or gw.uptime_s
        gw.firmware = _first(data, "firmware", "version") or gw.firmware
        sinks = data.get("sinks")
        if isinstance(sinks, list):
            gw.sinks = len(sinks)
        elif sinks is not None:
            gw.sinks = _as_int(sinks, gw.sinks or 0)
        return GatewayHealth(**gw.to_dict())

    def _node_status(self, topic: str, data: Any) -> NodeHealth:
        if not isinstance(data, dict):
            raise DecodeError(topic, "node status must be a JSON object")
        parts = topic.split("/")
        node_id = _first(data, "node_id", "address", "id") or (parts[1] if len(parts) > 2 else None)
        if node_id is None:
            raise DecodeError(topic, "node status without node id")
        node_id = str(node_id)
        floor = _first(data, "floor_id", "floor")
        hops = _first(data, "hop_count", "hops")

        node = NodeHealth(
            node_id=node_id,
            battery=_as_float(_first(data, "battery", "battery_level")),
            firmware=_first(data, "firmware", "fw"),
            hops=_as_int(hops, 0) if hops is not None else None,
            role=data.get("role"),
            x=_as_float(data.get("x")),
            y=_as_float(data.get("y")),
            z=_as_float(data.get("z")),
            floor=_as_int(floor, DEFAULT_FLOOR) if floor is not None else None,
            last_seen=self._clock(),
        )
        previous = self.nodes.get(node_id)
        if previous is not None:
            # status messages are partial, keep what we already know
            for attr in ("battery", "firmware", "hops", "role", "x", "y", "z", "floor"):
                if getattr(node, attr) is None:
                    setattr(node, attr, getattr(previous, attr))
        self.nodes[node_id] = node

        if node.is_anchor and node.has_position:
            known = self.anchor_store.get(node_id)
            if known is None or (known.x, known.y, known.floor) != (node.x, node.y, node.floor or known.floor):
                self.anchor_store.upsert(
                    node_id, node.x, node.y, node.z or 0.0, node.floor or (known.floor if known else DEFAULT_FLOOR)
                )
                logger.info("Anchor %s registered at (%.2f, %.2f)", node_id, node.x, node.y)
        if self.anchor_store.has(node_id):
            self.anchor_store.update_health(
                node_id, battery=node.battery, firmware=node.firmware, hops=node.hops, last_seen=node.last_seen
            )
        return node

    # ---------- Registry queries ----------
    def node_battery(self, node_id: str) -> Optional[float]:
        node = self.nodes.get(node_id)
        return node.battery if node else None

    def sweep_gateways(self, now: Optional[float] = None) -> List[GatewayHealth]:
        """Mark silent gateways offline; returns the ones that just went offline."""
        now = self._clock() if now is None else now
        newly_offline: List[GatewayHealth] = []
        for gw in self.gateways.values():
            if gw.status == "online" and now - gw.last_seen > self.gateway_timeout_s:
                gw.status = "offline"
                newly_offline.append(GatewayHealth(**gw.to_dict()))
                logger.warning("Gateway %s silent for %.0fs, marked offline", gw.gateway_id, now - gw.last_seen)
        return newly_offline
