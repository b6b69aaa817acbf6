from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence


DEFAULT_QUALITY = 0.9
MAX_VALID_DISTANCE_M = 100.0
SINGULAR_EPS = 1e-10


@dataclass(frozen=True)
class RangingInput:
    """One anchor position with the tag's measured distance to it."""

    x: float
    y: float
    distance_m: float
    quality: Optional[float] = None


@dataclass(frozen=True)
class TrilaterationResult:
    x: float
    y: float
    confidence: float


def _weight(quality: Optional[float]) -> float:
    return min(1.0, max(0.1, quality or DEFAULT_QUALITY))


def trilaterate(measurements: Sequence[RangingInput]) -> Optional[TrilaterationResult]:
    """
    Weighted least-squares trilateration (2-D).

    The circle equations are linearised by subtracting the first one from the
    rest; the (n-1)x2 system is solved through its weighted normal equations
    with a closed-form 2x2 inverse. Returns None with fewer than three usable
    measurements or when the anchor layout is degenerate.
    """
    valid = [
        m for m in measurements
        if m.distance_m is not None and 0 < m.distance_m < MAX_VALID_DISTANCE_M
    ]
    if len(valid) < 3:
        return None

    weights = [_weight(m.quality) for m in valid]
    x1, y1, d1 = valid[0].x, valid[0].y, valid[0].distance_m

    # Accumulate AᵀA and Aᵀb directly; no matrices are materialised.
    a11 = a12 = a22 = 0.0
    b1 = b2 = 0.0
    for i in range(1, len(valid)):
        xi, yi, di = valid[i].x, valid[i].y, valid[i].distance_m
        w = math.sqrt(weights[0] * weights[i])
        ax = 2 * (xi - x1) * w
        ay = 2 * (yi - y1) * w
        bi = (d1 * d1 - di * di + xi * xi - x1 * x1 + yi * yi - y1 * y1) * w
        a11 += ax * ax
        a12 += ax * ay
        a22 += ay * ay
        b1 += ax * bi
        b2 += ay * bi

    det = a11 * a22 - a12 * a12
    if abs(det) < SINGULAR_EPS:
        return None

    x = (a22 * b1 - a12 * b2) / det
    y = (a11 * b2 - a12 * b1) / det

    residual = 0.0
    for m in valid:
        est = math.hypot(x - m.x, y - m.y)
        residual += (m.distance_m - est) ** 2
    confidence = max(0.0, min(1.0, 1 - math.sqrt(residual / len(valid)) / 5))

    return TrilaterationResult(x=x, y=y, confidence=confidence)
