from __future__ import annotations

from dataclasses import dataclass, field, asdict, replace
from typing import Optional, Dict, Any, List, Tuple, Union, Iterator
from enum import Enum


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lon: float

    def to_dict(self) -> Dict[str, float]:
        return {"lat": self.lat, "lon": self.lon}


@dataclass(frozen=True)
class CalibrationPoint:
    pixel: Tuple[float, float]
    geo: Tuple[float, float]

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CalibrationPoint":
        px, py = d["pixel"]
        lat, lon = d["geo"]
        return cls(pixel=(float(px), float(py)), geo=(float(lat), float(lon)))


# ---------- Decoder output ----------


class MessageKind(Enum):
    GATEWAY_STATUS = "gateway_status"
    NODE_STATUS = "node_status"
    WNT = "wnt"
    ELA = "ela"
    BINARY = "binary"
    GENERIC = "generic"


class MeasurementMethod(Enum):
    DIRECT = "direct-ranging"
    RSSI = "signal-strength"


@dataclass(frozen=True)
class Measurement:
    anchor_id: str
    distance_m: float
    quality: float
    method: MeasurementMethod = MeasurementMethod.DIRECT


@dataclass(frozen=True)
class SensorReadings:
    battery: Optional[float] = None
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    motion: Optional[bool] = None

    @property
    def is_empty(self) -> bool:
        return all(v is None for v in (self.battery, self.temperature, self.humidity, self.motion))


@dataclass(frozen=True)
class TagObservation:
    """
    One tag's ranging report, normalised across every wire dialect.
    Lives for a single pipeline pass.
    """

    tag_id: str
    measurements: Tuple[Measurement, ...] = ()
    sensors: SensorReadings = field(default_factory=SensorReadings)
    floor: int = 1
    name: Optional[str] = None
    device_type: Optional[str] = None
    timestamp: Optional[float] = None

    def __len__(self) -> int:
        return len(self.measurements)

    def __iter__(self) -> Iterator[Measurement]:
        return iter(self.measurements)

    @property
    def is_sensor_only(self) -> bool:
        return len(self.measurements) == 0


@dataclass
class GatewayHealth:
    gateway_id: str
    status: str = "online"
    uptime_s: Optional[float] = None
    firmware: Optional[str] = None
    sinks: Optional[int] = None
    last_seen: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class NodeHealth:
    node_id: str
    battery: Optional[float] = None
    firmware: Optional[str] = None
    hops: Optional[int] = None
    role: Optional[str] = None
    x: Optional[float] = None
    y: Optional[float] = None
    z: Optional[float] = None
    floor: Optional[int] = None
    last_seen: float = 0.0

    @property
    def is_anchor(self) -> bool:
        return (self.role or "").lower() == "anchor"

    @property
    def has_position(self) -> bool:
        return self.x is not None and self.y is not None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RangingReport:
    kind: MessageKind
    observations: Tuple[TagObservation, ...]


DecodedMessage = Union[GatewayHealth, NodeHealth, RangingReport]


# ---------- Anchors ----------


@dataclass(frozen=True)
class Anchor:
    anchor_id: str
    x: float
    y: float
    z: float = 0.0
    floor: int = 1
    battery: Optional[float] = None
    firmware: Optional[str] = None
    hops: Optional[int] = None
    last_seen: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------- Devices ----------


class DeviceStatus(Enum):
    ONLINE = "online"
    OFFLINE = "offline"


DEFAULT_DEVICE_TYPE = "person"


@dataclass
class DeviceRecord:
    """
    Current state of one tracked device, as held by the device cache.
    """

    id: str
    name: str
    type: str = DEFAULT_DEVICE_TYPE
    zone: str = ""
    battery: Optional[float] = None
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    last_update: float = 0.0
    status: DeviceStatus = DeviceStatus.ONLINE
    is_moving: bool = False
    x: Optional[float] = None
    y: Optional[float] = None
    floor: int = 1
    confidence: float = 0.0
    geo: Optional[GeoPoint] = None
    speed: float = 0.0
    zones: List[str] = field(default_factory=list)

    def copy(self) -> "DeviceRecord":
        return replace(self, zones=list(self.zones))

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        d["geo"] = self.geo.to_dict() if self.geo else None
        return d


@dataclass
class DevicePatch:
    """Partial device update. ``None`` means "keep the previous value"."""

    id: str
    name: Optional[str] = None
    type: Optional[str] = None
    zone: Optional[str] = None
    battery: Optional[float] = None
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    last_update: Optional[float] = None
    is_moving: Optional[bool] = None
    x: Optional[float] = None
    y: Optional[float] = None
    floor: Optional[int] = None
    confidence: Optional[float] = None
    geo: Optional[GeoPoint] = None
    speed: Optional[float] = None
    zones: Optional[List[str]] = None


# ---------- Zones ----------


class ZoneType(Enum):
    GENERAL = "general"
    RESTRICTED = "restricted"


@dataclass(frozen=True)
class Zone:
    id: str
    name: str
    floor: int = 1
    type: ZoneType = ZoneType.GENERAL
    polygon: Tuple[Tuple[float, float], ...] = ()
    alert_on_enter: bool = True
    alert_on_exit: bool = True

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Zone":
        # camelCase keys are accepted for configs written by the admin UI
        def flag(snake: str, camel: str) -> bool:
            v = d.get(snake, d.get(camel))
            return v is not False

        try:
            zone_type = ZoneType(d.get("type") or ZoneType.GENERAL.value)
        except ValueError:
            zone_type = ZoneType.GENERAL
        return cls(
            id=str(d["id"]),
            name=str(d.get("name") or d["id"]),
            floor=int(d.get("floor") or 1),
            type=zone_type,
            polygon=tuple((float(p[0]), float(p[1])) for p in d.get("polygon") or []),
            alert_on_enter=flag("alert_on_enter", "alertOnEnter"),
            alert_on_exit=flag("alert_on_exit", "alertOnExit"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "floor": self.floor,
            "type": self.type.value,
            "polygon": [list(p) for p in self.polygon],
            "alert_on_enter": self.alert_on_enter,
            "alert_on_exit": self.alert_on_exit,
        }


class ZoneEventType(Enum):
    ENTER = "enter"
    EXIT = "exit"


@dataclass(frozen=True)
class ZoneEvent:
    device_id: str
    zone_id: str
    zone_name: str
    zone_type: ZoneType
    event: ZoneEventType
    alert_on_enter: bool = True
    alert_on_exit: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "zone_id": self.zone_id,
            "zone_name": self.zone_name,
            "zone_type": self.zone_type.value,
            "event": self.event.value,
        }


# ---------- Alerts ----------


class AlertType(Enum):
    ZONE_ENTER = "zone_enter"
    ZONE_EXIT = "zone_exit"
    LOW_BATTERY = "low_battery"
    SPEED = "speed"
    OFFLINE = "offline"


class AlertSeverity(Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class Alert:
    id: str
    device_id: str
    zone_id: Optional[str]
    type: AlertType
    severity: AlertSeverity
    message: str
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["type"] = self.type.value
        d["severity"] = self.severity.value
        return d
