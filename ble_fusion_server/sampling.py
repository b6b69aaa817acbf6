from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .geometry import euclidean_distance


logger = logging.getLogger(__name__)


@dataclass
class TagMotionState:
    x: float
    y: float
    floor: int
    last_accepted: float
    last_moved: float
    is_moving: bool = True


class AdaptiveSampler:
    """
    Distance-based adaptive rate gate.

    Moving tags are let through every ``moving_interval_s``; a tag that has
    not moved more than ``movement_threshold_m`` for ``idle_s`` is parked and
    only let through every ``stationary_interval_s``. Any real movement or a
    floor change is always accepted.
    """

    def __init__(
        self,
        movement_threshold_m: float = 0.5,
        moving_interval_s: float = 5.0,
        stationary_interval_s: float = 300.0,
        idle_s: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self.movement_threshold_m = movement_threshold_m
        self.moving_interval_s = moving_interval_s
        self.stationary_interval_s = stationary_interval_s
        self.idle_s = idle_s
        self._clock = clock
        self._tags: Dict[str, TagMotionState] = {}
        self.accepted = 0
        self.suppressed = 0

    def should_accept(self, tag_id: str, x: float, y: float, floor: int, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        state = self._tags.get(tag_id)

        if state is None:
            self._tags[tag_id] = TagMotionState(x=x, y=y, floor=floor, last_accepted=now, last_moved=now)
            self.accepted += 1
            return True

        moved = euclidean_distance(state.x, state.y, x, y) > self.movement_threshold_m
        if moved or floor != state.floor:
            state.x, state.y, state.floor = x, y, floor
            state.last_accepted = now
            state.last_moved = now
            state.is_moving = True
            self.accepted += 1
            return True

        if state.is_moving and now - state.last_moved >= self.idle_s:
            state.is_moving = False
            logger.debug("Tag %s is now stationary", tag_id)

        interval = self.moving_interval_s if state.is_moving else self.stationary_interval_s
        if now - state.last_accepted >= interval:
            state.x, state.y = x, y
            state.last_accepted = now
            self.accepted += 1
            return True

        self.suppressed += 1
        return False

    def is_moving(self, tag_id: str) -> bool:
        state = self._tags.get(tag_id)
        return state.is_moving if state else False

    def forget(self, tag_id: str) -> None:
        self._tags.pop(tag_id, None)

    def __len__(self) -> int:
        return len(self._tags)
