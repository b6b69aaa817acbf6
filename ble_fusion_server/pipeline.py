from __future__ import annotations

import copy
import logging
import math
import threading
import time
from collections import Counter
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from .alerts import AlertEvaluator
from .anchor_store import AnchorStore
from .calibration import AffineCalibrator
from .config_manager import ConfigManager
from .decoder import ProtocolDecoder
from .device_cache import DeviceCache
from .filters import KalmanFilter
from .models import (
    Alert,
    CalibrationPoint,
    DevicePatch,
    DeviceRecord,
    GatewayHealth,
    MeasurementMethod,
    NodeHealth,
    RangingReport,
    TagObservation,
)
from .sampling import AdaptiveSampler
from .trilateration import RangingInput, trilaterate
from .zones import ZoneChecker


logger = logging.getLogger(__name__)

MS_TO_KMH = 3.6

CHANNEL_POSITIONS = "positions"
CHANNEL_ZONES = "zones"
CHANNEL_ALERTS = "alerts"
CHANNEL_STATS = "stats"


class Publisher(Protocol):
    def publish(self, channel: str, data: Any) -> None: ...

    @property
    def client_count(self) -> int: ...


class PositionSink(Protocol):
    @property
    def configured(self) -> bool: ...

    def push_async(
        self, unit_id: str, lat: float, lon: float, speed: Optional[float] = None, timestamp: Optional[float] = None
    ) -> None: ...


class PositioningEngine:
    """
    Wires the decoder, solver, smoothing, gating, geo mapping, zones, alerts
    and the device cache together.

    Every registry lives on the engine instance. Message handling, the
    periodic sweeps and admin writes all run under one re-entrant lock, so a
    device's state is only ever touched by one of them at a time.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        broadcaster: Optional[Publisher] = None,
        upstream: Optional[PositionSink] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config_manager = config_manager
        self.broadcaster = broadcaster
        self.upstream = upstream
        self._clock = clock
        self.lock = threading.RLock()
        self.started_at = clock()

        pos = config_manager.get_positioning_config()
        self.min_anchors = int(pos.get("min_anchors", 3))
        self.max_distance_m = float(pos.get("max_distance_m", 30.0))
        self.kalman_enabled = bool(pos.get("kalman_enabled", True))
        self._kalman_params = {
            "dt": float(pos.get("dt", 1.0)),
            "process_noise": float(pos.get("process_noise", 0.5)),
            "measurement_noise": float(pos.get("measurement_noise", 1.0)),
        }

        dec = config_manager.get_decoder_config()
        self.anchor_store = AnchorStore()
        self.decoder = ProtocolDecoder(
            self.anchor_store,
            topics=config_manager.get_topics(),
            min_confidence=float(dec.get("min_confidence", 0.6)),
            max_range_m=float(dec.get("max_range_m", 30.0)),
            tx_power=float(dec.get("tx_power", -59.0)),
            path_loss_exponent=float(dec.get("path_loss_exponent", 2.5)),
            gateway_timeout_s=float(dec.get("gateway_timeout_s", 300)),
            clock=clock,
        )

        smp = config_manager.get_sampling_config()
        self.sampler = AdaptiveSampler(
            movement_threshold_m=float(smp.get("movement_threshold_m", 0.5)),
            moving_interval_s=float(smp.get("moving_interval_s", 5.0)),
            stationary_interval_s=float(smp.get("stationary_interval_s", 300.0)),
            idle_s=float(smp.get("idle_s", 60.0)),
            clock=clock,
        )

        alr = config_manager.get_alerts_config()
        offline_timeout_s = float(alr.get("offline_timeout_s", 300.0))
        self.cache = DeviceCache(offline_timeout_s=offline_timeout_s, clock=clock)
        self.zones = ZoneChecker()
        self.zones.set_zones(config_manager.get_zones())
        self.alerts = AlertEvaluator(
            cooldown_s=float(alr.get("cooldown_s", 300.0)),
            battery_warning=float(alr.get("battery_warning", 15.0)),
            battery_critical=float(alr.get("battery_critical", 5.0)),
            offline_timeout_s=offline_timeout_s,
            speed_limit_kmh=float(alr.get("speed_limit_kmh", 40.0)),
            max_recent=int(alr.get("max_recent", 100)),
            on_alert=self._on_alert,
            clock=clock,
        )

        self.calibrators: Dict[int, AffineCalibrator] = {}
        self.filters: Dict[str, KalmanFilter] = {}
        self._last_fix: Dict[str, Tuple[float, float, float]] = {}
        self.tag_mappings = config_manager.get_tag_mappings()

        # counters
        self.messages: Counter = Counter()
        self.rejections: Counter = Counter()
        self.positions_computed = 0
        self.direct_measurements = 0
        self.rssi_measurements = 0
        self.last_error: Optional[str] = None

        self.refresh_floor_maps()

    # ---------- Configuration-derived lookups ----------
    def refresh_floor_maps(self) -> None:
        """Rebuild the anchor table and per-floor calibrators from configuration."""
        with self.lock:
            floors = self.config_manager.get_floors()
            self.anchor_store.load_floors(floors)
            csv_path = self.config_manager.get_anchor_csv_path()
            if csv_path:
                self.anchor_store.load_csv(csv_path)

            calibrators: Dict[int, AffineCalibrator] = {}
            for floor in floors:
                floor_id = int(floor.get("id", 1))
                raw_points = (floor.get("calibration") or {}).get("points") or []
                try:
                    points = [CalibrationPoint.from_dict(p) for p in raw_points]
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning("Floor %s: invalid calibration points ignored (%s)", floor_id, e)
                    continue
                cal = AffineCalibrator.fit(points)
                if cal is not None:
                    calibrators[floor_id] = cal
                elif points:
                    logger.warning("Floor %s: calibration needs 3 non-collinear points", floor_id)
            self.calibrators = calibrators
            logger.info(
                "Floor maps loaded: %d floors, %d anchors, %d calibrated",
                len(floors),
                len(self.anchor_store),
                len(calibrators),
            )

    # ---------- Inbound ----------
    def handle_message(self, topic: str, payload: bytes | str) -> None:
        """Decode one transport message and dispatch it. Never raises."""
        with self.lock:
            try:
                message = self.decoder.decode(topic, payload)
                if message is None:
                    self.last_error = f"malformed message on {topic}"
                    return
                match message:
                    case RangingReport(kind=kind, observations=observations):
                        self.messages[kind.value] += 1
                        for observation in observations:
                            self.process_observation(observation)
                    case GatewayHealth():
                        self.messages["gateway_status"] += 1
                    case NodeHealth():
                        self.messages["node_status"] += 1
            except Exception as e:
                self.last_error = str(e)
                logger.exception("Failed to handle message on %s", topic)

    def process_observation(self, obs: TagObservation) -> Optional[DeviceRecord]:
        with self.lock:
            now = self._clock()
            if obs.is_sensor_only:
                return self._merge_sensors(obs, now)

            anchors = self.anchor_store.for_floor(obs.floor)
            inputs: List[RangingInput] = []
            for m in obs:
                anchor = anchors.get(m.anchor_id)
                if anchor is None:
                    continue
                inputs.append(RangingInput(anchor.x, anchor.y, m.distance_m, m.quality))
                if m.method is MeasurementMethod.DIRECT:
                    self.direct_measurements += 1
                else:
                    self.rssi_measurements += 1

            if len(inputs) < self.min_anchors:
                return self._reject(obs, "insufficient_anchors", f"{len(inputs)} known anchors")
            if any(i.distance_m > self.max_distance_m for i in inputs):
                return self._reject(obs, "outlier", f"distance above {self.max_distance_m:g}m")

            result = trilaterate(inputs)
            if result is None:
                return self._reject(obs, "no_solution", "degenerate anchor geometry")

            x, y = result.x, result.y
            speed_kmh = 0.0
            if self.kalman_enabled:
                kf = self.filters.get(obs.tag_id)
                if kf is None:
                    kf = self.filters[obs.tag_id] = KalmanFilter(**self._kalman_params)
                x, y = kf.update(x, y)
                # velocity is per filter step; only m/s when fixes arrive every dt seconds
                speed_kmh = kf.speed * MS_TO_KMH
            else:
                last = self._last_fix.get(obs.tag_id)
                if last is not None and now > last[2]:
                    speed_kmh = math.hypot(x - last[0], y - last[1]) / (now - last[2]) * MS_TO_KMH
            self._last_fix[obs.tag_id] = (x, y, now)

            if not self.sampler.should_accept(obs.tag_id, x, y, obs.floor, now):
                logger.debug("Tag %s: update suppressed by adaptive sampling", obs.tag_id)
                return None
            self.positions_computed += 1

            calibrator = self.calibrators.get(obs.floor)
            geo = calibrator.pixel_to_geo(x, y) if calibrator else None

            events = self.zones.check(obs.tag_id, x, y, obs.floor)
            for event in events:
                self.alerts.evaluate(event)

            battery = obs.sensors.battery
            if battery is None:
                battery = self.decoder.node_battery(obs.tag_id)
            motion = obs.sensors.motion
            device = self.cache.update(
                DevicePatch(
                    id=obs.tag_id,
                    name=obs.name,
                    type=obs.device_type,
                    zone=", ".join(self.zones.device_zone_names(obs.tag_id)),
                    zones=self.zones.device_zone_ids(obs.tag_id),
                    battery=battery,
                    temperature=obs.sensors.temperature,
                    humidity=obs.sensors.humidity,
                    is_moving=motion if motion is not None else self.sampler.is_moving(obs.tag_id),
                    x=round(x, 2),
                    y=round(y, 2),
                    floor=obs.floor,
                    confidence=round(result.confidence, 3),
                    geo=geo,
                    speed=round(speed_kmh, 1),
                    last_update=now,
                )
            )

            self._publish(CHANNEL_POSITIONS, device.to_dict())
            for event in events:
                self._publish(CHANNEL_ZONES, event.to_dict())
            self._push_upstream(device, obs.timestamp)
            return device

    def _merge_sensors(self, obs: TagObservation, now: float) -> Optional[DeviceRecord]:
        if obs.sensors.is_empty:
            return None
        s = obs.sensors
        device = self.cache.update(
            DevicePatch(
                id=obs.tag_id,
                name=obs.name,
                type=obs.device_type,
                battery=s.battery,
                temperature=s.temperature,
                humidity=s.humidity,
                is_moving=s.motion,
                last_update=now,
            )
        )
        self._publish(CHANNEL_POSITIONS, device.to_dict())
        return device

    def _reject(self, obs: TagObservation, reason: str, detail: str) -> None:
        self.rejections[reason] += 1
        logger.debug("Tag %s rejected (%s): %s", obs.tag_id, reason, detail)
        return None

    # ---------- Outbound ----------
    def _publish(self, channel: str, data: Any) -> None:
        if self.broadcaster is not None:
            self.broadcaster.publish(channel, data)

    def _on_alert(self, alert: Alert) -> None:
        self._publish(CHANNEL_ALERTS, alert.to_dict())

    def _push_upstream(self, device: DeviceRecord, timestamp: Optional[float]) -> None:
        if self.upstream is None or device.geo is None or not self.upstream.configured:
            return
        unit_id = self.tag_mappings.get(device.id) or device.id
        self.upstream.push_async(unit_id, device.geo.lat, device.geo.lon, device.speed, timestamp)

    # ---------- Sweeps ----------
    def sweep_stale(self) -> List[DeviceRecord]:
        with self.lock:
            now = self._clock()
            newly_offline = self.cache.sweep_stale(now)
            for device in newly_offline:
                logger.info("Device %s went offline", device.id)
                self.alerts.device_went_offline(device, now)
                self._publish(CHANNEL_POSITIONS, device.to_dict())
            return newly_offline

    def sweep_health(self) -> List[Alert]:
        with self.lock:
            now = self._clock()
            fired: List[Alert] = []
            for device in self.cache.get_all():
                fired.extend(self.alerts.check_device_health(device, now))
            self.alerts.clean_cooldowns(now)
            self.decoder.sweep_gateways(now)
            return fired

    def stats(self) -> Dict[str, Any]:
        with self.lock:
            upstream = self.upstream
            return {
                "devices_online": self.cache.online_count,
                "devices_total": self.cache.size,
                "uptime_s": round(self._clock() - self.started_at, 1),
                "messages": dict(self.messages),
                "positions_computed": self.positions_computed,
                "direct_measurements": self.direct_measurements,
                "rssi_measurements": self.rssi_measurements,
                "rejections": dict(self.rejections),
                "suppressed": self.sampler.suppressed,
                "decode_errors": self.decoder.decode_errors,
                "upstream_ok": getattr(upstream, "ok_count", 0),
                "upstream_failed": getattr(upstream, "failed_count", 0),
                "last_error": self.last_error,
                "alerts_total": self.alerts.total_alerts,
                "gateways": len(self.decoder.gateways),
                "anchors": len(self.anchor_store),
                "ws_clients": self.broadcaster.client_count if self.broadcaster is not None else 0,
            }

    def broadcast_stats(self) -> None:
        self._publish(CHANNEL_STATS, self.stats())

    # ---------- Admin ----------
    def list_devices(self, floor: Optional[int] = None) -> List[DeviceRecord]:
        with self.lock:
            return self.cache.get_all() if floor is None else self.cache.get_all_for_floor(floor)

    def get_device(self, device_id: str) -> Optional[DeviceRecord]:
        with self.lock:
            return self.cache.get(device_id)

    def remove_device(self, device_id: str) -> bool:
        with self.lock:
            removed = self.cache.remove(device_id)
            self.zones.forget_device(device_id)
            self.sampler.forget(device_id)
            self.filters.pop(device_id, None)
            self._last_fix.pop(device_id, None)
            if removed:
                logger.info("Device %s removed", device_id)
            return removed

    def list_floors(self) -> List[Dict[str, Any]]:
        with self.lock:
            floors = copy.deepcopy(self.config_manager.get_floors())
            for floor in floors:
                floor["calibrated"] = int(floor.get("id", 1)) in self.calibrators
                floor["device_count"] = len(self.cache.get_all_for_floor(int(floor.get("id", 1))))
            return floors

    def update_floor(self, floor_id: int, changes: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply ``changes`` (plan_url, bounds, calibration, anchors, name) to one
        floor. The file is written first; lookups are rebuilt only after the
        write succeeded. Raises KeyError for an unknown floor and
        ConfigPersistError when the file cannot be written.
        """
        with self.lock:
            floors = copy.deepcopy(self.config_manager.get_floors())
            for floor in floors:
                if int(floor.get("id", 1)) == floor_id:
                    floor.update({k: v for k, v in changes.items() if v is not None})
                    break
            else:
                raise KeyError(floor_id)

            self.config_manager.set_floors(floors)
            self.refresh_floor_maps()
            logger.info("Floor %s updated: %s", floor_id, ", ".join(sorted(changes)))
            return copy.deepcopy(floor)

    def list_zones(self) -> List[Dict[str, Any]]:
        with self.lock:
            return self.zones.zones_with_counts()

    def replace_zones(self, zones: List[Dict[str, Any]]) -> int:
        with self.lock:
            self.config_manager.set_zones(zones)
            self.zones.set_zones(zones)
            self.zones.clear_state()
            logger.info("Zones replaced: %d zones", len(zones))
            return len(zones)

    def recent_alerts(self, limit: int = 50) -> List[Alert]:
        with self.lock:
            return self.alerts.recent_alerts(limit)

    def list_gateways(self) -> List[Dict[str, Any]]:
        with self.lock:
            return [gw.to_dict() for gw in self.decoder.gateways.values()]

    def list_anchors(self) -> List[Dict[str, Any]]:
        with self.lock:
            return self.anchor_store.to_records()

    def seed_mock(self) -> None:
        with self.lock:
            self.cache.seed_mock()

