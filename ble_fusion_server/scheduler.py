from __future__ import annotations

import logging
import threading
from typing import Callable, List


logger = logging.getLogger(__name__)


class PeriodicTask:
    """Calls ``func`` every ``interval_s`` seconds on a daemon thread until stopped."""

    def __init__(self, name: str, interval_s: float, func: Callable[[], object]):
        self.name = name
        self.interval_s = interval_s
        self.func = func
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self.runs = 0

    def start(self) -> None:
        self._thread.start()
        logger.info("Periodic task %s started (every %.0fs)", self.name, self.interval_s)

    def _run(self) -> None:
        while not self._stop.wait(self.interval_s):
            self.run_once()

    def run_once(self) -> None:
        try:
            self.func()
        except Exception:
            logger.exception("Periodic task %s failed", self.name)
        finally:
            self.runs += 1

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join(timeout)

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()


def start_all(tasks: List[PeriodicTask]) -> None:
    for task in tasks:
        task.start()


def stop_all(tasks: List[PeriodicTask]) -> None:
    for task in tasks:
        task.stop()
