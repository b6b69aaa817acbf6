from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, Optional

import requests

from .errors import UpstreamError


logger = logging.getLogger(__name__)

POSITION_PATH = "/api/v3/units/{unit_id}/position"


class UpstreamClient:
    """Pushes geo positions to the fleet-tracking API. Best effort only."""

    def __init__(self, api_url: str = "", api_key: str = "", timeout_s: float = 5.0, workers: int = 2):
        self.api_url = (api_url or "").rstrip("/")
        self.api_key = api_key or ""
        self.timeout_s = timeout_s
        self._executor = ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="upstream")
        self._lock = threading.Lock()
        self.ok_count = 0
        self.failed_count = 0
        self.last_error: Optional[str] = None

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "UpstreamClient":
        return cls(
            api_url=cfg.get("api_url", ""),
            api_key=cfg.get("api_key", ""),
            timeout_s=float(cfg.get("timeout_s", 5.0)),
            workers=int(cfg.get("workers", 2)),
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_url and self.api_key)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "X-API-Key": self.api_key,
            "Content-Type": "application/json",
        }

    def post_position(
        self,
        unit_id: str,
        lat: float,
        lon: float,
        speed: Optional[float] = None,
        timestamp: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        POST one position as ``{lat, lon, speed?, timestamp?}``, timestamp in
        Unix seconds. Raises UpstreamError on a non-2xx answer and lets
        ``requests`` transport errors through.
        """
        body: Dict[str, Any] = {"lat": lat, "lon": lon}
        if speed is not None:
            body["speed"] = speed
        if timestamp is not None:
            body["timestamp"] = timestamp

        r = requests.post(
            self.api_url + POSITION_PATH.format(unit_id=unit_id),
            json=body,
            headers=self._headers(),
            timeout=self.timeout_s,
        )
        if not 200 <= r.status_code < 300:
            raise UpstreamError(r.status_code, r.text)
        try:
            return r.json()
        except ValueError:
            return {}

    def push_async(
        self,
        unit_id: str,
        lat: float,
        lon: float,
        speed: Optional[float] = None,
        timestamp: Optional[float] = None,
    ) -> Future:
        return self._executor.submit(self._push, unit_id, lat, lon, speed, timestamp)

    def _push(self, unit_id: str, lat: float, lon: float, speed: Optional[float], timestamp: Optional[float]) -> bool:
        try:
            self.post_position(unit_id, lat, lon, speed, timestamp)
        except UpstreamError as e:
            self._record_failure(str(e))
            logger.warning("Upstream push for %s rejected: %s", unit_id, e)
            return False
        except requests.RequestException as e:
            self._record_failure(str(e))
            logger.error("Upstream push for %s failed: %s", unit_id, e)
            return False
        with self._lock:
            self.ok_count += 1
        return True

    def _record_failure(self, message: str) -> None:
        with self._lock:
            self.failed_count += 1
            self.last_error = message

    def close(self) -> None:
        self._executor.shutdown(wait=False)
