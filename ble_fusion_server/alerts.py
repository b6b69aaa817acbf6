from __future__ import annotations

import logging
import time
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, List, Optional

from .models import (
    Alert,
    AlertSeverity,
    AlertType,
    DeviceRecord,
    DeviceStatus,
    ZoneEvent,
    ZoneEventType,
    ZoneType,
)


logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_S = 5 * 60
MAX_RECENT_ALERTS = 100

AlertCallback = Callable[[Alert], None]


class AlertEvaluator:
    """
    Turns zone events and device health into alerts.

    Every alert passes a cooldown keyed by ``device:type:zone`` so that a
    flapping tag or a slowly draining battery cannot flood subscribers.
    """

    def __init__(
        self,
        cooldown_s: float = DEFAULT_COOLDOWN_S,
        battery_warning: float = 15.0,
        battery_critical: float = 5.0,
        offline_timeout_s: float = 10 * 60,
        speed_limit_kmh: float = 40.0,
        max_recent: int = MAX_RECENT_ALERTS,
        on_alert: Optional[AlertCallback] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cooldown_s = cooldown_s
        self.battery_warning = battery_warning
        self.battery_critical = battery_critical
        self.offline_timeout_s = offline_timeout_s
        self.speed_limit_kmh = speed_limit_kmh
        self.on_alert = on_alert
        self._clock = clock

        self._cooldown: Dict[str, float] = {}
        self._recent: Deque[Alert] = deque(maxlen=max_recent)
        self._fired_total = 0

    # ---------- Rules ----------
    def evaluate(self, event: ZoneEvent) -> Optional[Alert]:
        if event.event is ZoneEventType.ENTER and event.alert_on_enter:
            if event.zone_type is ZoneType.RESTRICTED:
                severity = AlertSeverity.CRITICAL
                message = f'RESTRICTED ZONE BREACH: {event.device_id} entered "{event.zone_name}"'
            else:
                severity = AlertSeverity.WARNING
                message = f'{event.device_id} entered zone "{event.zone_name}"'
            return self._fire_alert(event.device_id, AlertType.ZONE_ENTER, severity, message, event.zone_id)

        if event.event is ZoneEventType.EXIT and event.alert_on_exit:
            return self._fire_alert(
                event.device_id,
                AlertType.ZONE_EXIT,
                AlertSeverity.INFO,
                f'{event.device_id} exited zone "{event.zone_name}"',
                event.zone_id,
            )
        return None

    def check_device_health(self, device: DeviceRecord, now: Optional[float] = None) -> List[Alert]:
        """Battery, speed and silence checks; run periodically over the whole cache."""
        now = self._clock() if now is None else now
        name = device.name or device.id
        fired: List[Alert] = []

        if device.battery is not None and device.battery < self.battery_warning:
            severity = (
                AlertSeverity.CRITICAL if device.battery < self.battery_critical else AlertSeverity.WARNING
            )
            alert = self._fire_alert(
                device.id, AlertType.LOW_BATTERY, severity, f"Low battery: {name} at {device.battery:g}%", now=now
            )
            if alert:
                fired.append(alert)

        if device.speed is not None and device.speed > self.speed_limit_kmh:
            severity = (
                AlertSeverity.CRITICAL
                if device.speed > self.speed_limit_kmh * 1.5
                else AlertSeverity.WARNING
            )
            alert = self._fire_alert(
                device.id, AlertType.SPEED, severity, f"Speed violation: {name} at {device.speed:.1f} km/h", now=now
            )
            if alert:
                fired.append(alert)

        silent_s = now - (device.last_update or 0)
        if device.status is DeviceStatus.ONLINE and silent_s > self.offline_timeout_s:
            alert = self._offline_alert(device, silent_s, now)
            if alert:
                fired.append(alert)

        return fired

    def device_went_offline(self, device: DeviceRecord, now: Optional[float] = None) -> Optional[Alert]:
        """Called by the staleness sweep for a device it has just flipped offline."""
        now = self._clock() if now is None else now
        return self._offline_alert(device, now - (device.last_update or 0), now)

    def _offline_alert(self, device: DeviceRecord, silent_s: float, now: float) -> Optional[Alert]:
        name = device.name or device.id
        return self._fire_alert(
            device.id,
            AlertType.OFFLINE,
            AlertSeverity.INFO,
            f"Device offline: {name} (last seen {round(silent_s / 60)}m ago)",
            now=now,
        )

    # ---------- Firing ----------
    def _fire_alert(
        self,
        device_id: str,
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
        zone_id: Optional[str] = None,
        now: Optional[float] = None,
    ) -> Optional[Alert]:
        now = self._clock() if now is None else now
        key = f"{device_id}:{alert_type.value}:{zone_id or 'none'}"
        last_fired = self._cooldown.get(key)
        if last_fired is not None and now - last_fired < self.cooldown_s:
            logger.debug("Alert suppressed by cooldown: %s", key)
            return None
        self._cooldown[key] = now

        alert = Alert(
            id=str(uuid.uuid4()),
            device_id=device_id,
            zone_id=zone_id,
            type=alert_type,
            severity=severity,
            message=message,
            timestamp=datetime.fromtimestamp(now, tz=timezone.utc).isoformat(),
        )
        self._recent.append(alert)
        self._fired_total += 1

        log = logger.warning if severity is not AlertSeverity.INFO else logger.info
        log("Alert %s: %s", severity.value.upper(), message)

        if self.on_alert is not None:
            try:
                self.on_alert(alert)
            except Exception:
                logger.exception("Alert callback failed for %s", alert.id)
        return alert

    # ---------- Housekeeping ----------
    def recent_alerts(self, limit: int = 50) -> List[Alert]:
        if limit <= 0:
            return []
        return list(self._recent)[-limit:]

    def clean_cooldowns(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        expired = [k for k, t in self._cooldown.items() if now - t > self.cooldown_s * 2]
        for k in expired:
            del self._cooldown[k]
        return len(expired)

    @property
    def cooldown_size(self) -> int:
        return len(self._cooldown)

    @property
    def total_alerts(self) -> int:
        return self._fired_total
