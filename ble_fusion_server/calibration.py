from __future__ import annotations

from typing import Iterable, Optional

import numpy as np

from .models import CalibrationPoint, GeoPoint


SINGULAR_EPS = 1e-12


class AffineCalibrator:
    """
    Floor-plan pixel -> WGS84 mapping, ``[lat, lon] = A · [x, y, 1]``.

    Fitted by ordinary least squares over three or more reference points,
    ``B = (XᵀX)⁻¹ XᵀY``; ``A`` is ``Bᵀ`` (2x3).
    """

    def __init__(self, matrix: np.ndarray):
        self.matrix = matrix

    @classmethod
    def fit(cls, points: Iterable[CalibrationPoint]) -> Optional["AffineCalibrator"]:
        points = list(points)
        if len(points) < 3:
            return None
        X = np.array([[p.pixel[0], p.pixel[1], 1.0] for p in points], dtype=float)
        Y = np.array([[p.geo[0], p.geo[1]] for p in points], dtype=float)
        XtX = X.T @ X
        if abs(np.linalg.det(XtX)) < SINGULAR_EPS:
            return None
        B = np.linalg.inv(XtX) @ X.T @ Y
        return cls(B.T)

    def pixel_to_geo(self, x: float, y: float) -> GeoPoint:
        lat, lon = self.matrix @ np.array([x, y, 1.0])
        return GeoPoint(lat=float(lat), lon=float(lon))
