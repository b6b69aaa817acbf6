from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from .geometry import point_in_polygon
from .models import Zone, ZoneEvent, ZoneEventType


logger = logging.getLogger(__name__)


class ZoneChecker:
    """
    Geofence transitions for indoor x/y coordinates.

    The only state kept is, per device, the set of zone IDs it is currently
    inside. ``check`` builds the new set completely before diffing it against
    the previous one and swapping it in.
    """

    def __init__(self):
        self._zones: List[Zone] = []
        self._device_zone_state: Dict[str, Set[str]] = {}

    def set_zones(self, zones: Iterable[Union[Zone, Dict[str, Any]]]) -> None:
        self._zones = [z if isinstance(z, Zone) else Zone.from_dict(z) for z in zones or []]

    @property
    def zones(self) -> List[Zone]:
        return list(self._zones)

    def check(self, device_id: str, x: Optional[float], y: Optional[float], floor: int) -> List[ZoneEvent]:
        if x is None or y is None or not self._zones:
            return []

        current = self._device_zone_state.get(device_id, set())
        now_in: Set[str] = set()
        events: List[ZoneEvent] = []

        for zone in self._zones:
            if zone.floor != floor or len(zone.polygon) < 3:
                continue
            if point_in_polygon((x, y), zone.polygon):
                now_in.add(zone.id)
                if zone.id not in current:
                    events.append(self._event(device_id, zone, ZoneEventType.ENTER))
                    logger.info('Zone: %s ENTER "%s" (%s)', device_id, zone.name, zone.type.value)

        for zone_id in current - now_in:
            zone = self.zone_by_id(zone_id)
            if zone is not None:
                events.append(self._event(device_id, zone, ZoneEventType.EXIT))
                logger.info('Zone: %s EXIT "%s" (%s)', device_id, zone.name, zone.type.value)

        self._device_zone_state[device_id] = now_in
        return events

    @staticmethod
    def _event(device_id: str, zone: Zone, kind: ZoneEventType) -> ZoneEvent:
        return ZoneEvent(
            device_id=device_id,
            zone_id=zone.id,
            zone_name=zone.name,
            zone_type=zone.type,
            event=kind,
            alert_on_enter=zone.alert_on_enter,
            alert_on_exit=zone.alert_on_exit,
        )

    def device_zone_ids(self, device_id: str) -> List[str]:
        # keep the configured zone order so names and ids line up
        ids = self._device_zone_state.get(device_id, set())
        return [z.id for z in self._zones if z.id in ids]

    def device_zone_names(self, device_id: str) -> List[str]:
        ids = self._device_zone_state.get(device_id, set())
        return [z.name for z in self._zones if z.id in ids]

    def zone_by_id(self, zone_id: str) -> Optional[Zone]:
        for z in self._zones:
            if z.id == zone_id:
                return z
        return None

    def zones_with_counts(self) -> List[Dict[str, Any]]:
        result = []
        for z in self._zones:
            d = z.to_dict()
            d["device_count"] = sum(1 for ids in self._device_zone_state.values() if z.id in ids)
            result.append(d)
        return result

    def forget_device(self, device_id: str) -> None:
        self._device_zone_state.pop(device_id, None)

    def clear_state(self) -> None:
        """Drop every device's membership, e.g. after the zone list changed."""
        self._device_zone_state.clear()
