from __future__ import annotations

import logging
import time
from dataclasses import fields
from typing import Callable, Dict, List, Optional

from .models import DevicePatch, DeviceRecord, DeviceStatus, DEFAULT_DEVICE_TYPE


logger = logging.getLogger(__name__)

DEFAULT_OFFLINE_TIMEOUT_S = 5 * 60

# fields a patch may carry; ``status`` is owned by the cache
_PATCH_FIELDS = [f.name for f in fields(DevicePatch) if f.name not in ("id", "last_update")]


def merge_device(existing: Optional[DeviceRecord], patch: DevicePatch, now: float) -> DeviceRecord:
    """
    Merge ``patch`` onto ``existing`` (or onto fresh defaults).

    Every patch field that is ``None`` keeps the previous value; any other
    value, including an empty string or list, replaces it. The result is
    always ``online`` and stamped with the patch's ``last_update`` or ``now``.
    """
    if existing is None:
        merged = DeviceRecord(id=patch.id, name=patch.id, type=DEFAULT_DEVICE_TYPE)
    else:
        merged = existing.copy()

    for name in _PATCH_FIELDS:
        value = getattr(patch, name)
        if value is not None:
            setattr(merged, name, list(value) if name == "zones" else value)

    merged.last_update = patch.last_update if patch.last_update is not None else now
    merged.status = DeviceStatus.ONLINE
    return merged


class DeviceCache:
    """Authoritative in-memory table of the current device state."""

    def __init__(
        self,
        offline_timeout_s: float = DEFAULT_OFFLINE_TIMEOUT_S,
        clock: Callable[[], float] = time.time,
    ):
        self._cache: Dict[str, DeviceRecord] = {}
        self.offline_timeout_s = offline_timeout_s
        self._clock = clock

    def update(self, patch: DevicePatch) -> DeviceRecord:
        merged = merge_device(self._cache.get(patch.id), patch, self._clock())
        self._cache[patch.id] = merged
        return merged.copy()

    def get(self, device_id: str) -> Optional[DeviceRecord]:
        d = self._cache.get(device_id)
        return d.copy() if d else None

    def get_all(self) -> List[DeviceRecord]:
        return [d.copy() for d in self._cache.values()]

    def get_all_for_floor(self, floor: int) -> List[DeviceRecord]:
        return [d.copy() for d in self._cache.values() if d.floor == floor]

    def sweep_stale(self, now: Optional[float] = None) -> List[DeviceRecord]:
        """Flip silent devices to offline; returns only the ones that just flipped."""
        now = self._clock() if now is None else now
        threshold = now - self.offline_timeout_s
        newly_offline: List[DeviceRecord] = []
        for device in self._cache.values():
            if device.status is DeviceStatus.ONLINE and device.last_update < threshold:
                device.status = DeviceStatus.OFFLINE
                newly_offline.append(device.copy())
        return newly_offline

    def remove(self, device_id: str) -> bool:
        return self._cache.pop(device_id, None) is not None

    def clear(self) -> None:
        self._cache.clear()

    @property
    def size(self) -> int:
        return len(self._cache)

    @property
    def online_count(self) -> int:
        return sum(1 for d in self._cache.values() if d.status is DeviceStatus.ONLINE)

    def seed_mock(self) -> None:
        """Development data so the admin UI has something to draw."""
        now = self._clock()
        mocks = [
            ("ela_puck_001", "Worker Ahmed", "person", 87, 5.2, 3.1),
            ("ela_puck_002", "Forklift #3", "asset", 64, 12.0, 8.5),
            ("ela_coin_003", "Pallet Jack B", "asset", 92, 18.3, 1.7),
            ("ela_puck_004", "Worker Sarah", "person", 45, 8.8, 11.2),
            ("ela_coin_005", "Crane Sensor C", "asset", 78, 15.0, 6.0),
        ]
        for device_id, name, device_type, battery, x, y in mocks:
            self.update(
                DevicePatch(
                    id=device_id,
                    name=name,
                    type=device_type,
                    battery=battery,
                    x=x,
                    y=y,
                    floor=1,
                    is_moving=True,
                    confidence=0.85,
                    last_update=now,
                )
            )
        logger.info("Mock data loaded: %d devices", len(mocks))
