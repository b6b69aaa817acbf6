from __future__ import annotations

import math
from typing import Dict, Optional, Tuple

import numpy as np


class KalmanFilter:
    """
    Per-tag constant-velocity Kalman filter, state [x, y, vx, vy].

    Only the position is observed. Defaults are tuned for walking speed with
    channel-sounding ranges (about 1 m measurement noise).
    """

    def __init__(self, dt: float = 1.0, process_noise: float = 0.5, measurement_noise: float = 1.0):
        self.dt = dt
        self.process_noise = process_noise
        self.measurement_noise = measurement_noise

        self.kf_state: Optional[np.ndarray] = None
        self.kf_covariance: Optional[np.ndarray] = None

        q, r = process_noise, measurement_noise
        self.F = np.array(
            [[1, 0, dt, 0], [0, 1, 0, dt], [0, 0, 1, 0], [0, 0, 0, 1]], dtype=float
        )
        self.H = np.array([[1, 0, 0, 0], [0, 1, 0, 0]], dtype=float)
        # white-acceleration process noise, scaled by the time step
        self.Q = np.array(
            [
                [q * dt**4 / 4, 0, q * dt**3 / 2, 0],
                [0, q * dt**4 / 4, 0, q * dt**3 / 2],
                [q * dt**3 / 2, 0, q * dt**2, 0],
                [0, q * dt**3 / 2, 0, q * dt**2],
            ]
        )
        self.R = np.eye(2) * (r * r)

    def update(self, x: float, y: float) -> Tuple[float, float]:
        """Feed one raw position, return the smoothed one."""
        if self.kf_state is None:
            r = self.measurement_noise
            self.kf_state = np.array([x, y, 0.0, 0.0])
            # velocity is unknown on the first sample
            self.kf_covariance = np.diag([r, r, 10.0, 10.0])
            return x, y

        # predict
        predicted_state = self.F @ self.kf_state
        predicted_covariance = self.F @ self.kf_covariance @ self.F.T + self.Q

        # correct with the position observation
        measurement = np.array([x, y])
        innovation = measurement - self.H @ predicted_state
        innovation_covariance = self.H @ predicted_covariance @ self.H.T + self.R

        try:
            kalman_gain = predicted_covariance @ self.H.T @ np.linalg.inv(innovation_covariance)
        except np.linalg.LinAlgError:
            kalman_gain = predicted_covariance @ self.H.T @ np.linalg.pinv(innovation_covariance)

        self.kf_state = predicted_state + kalman_gain @ innovation
        ikh = np.eye(4) - kalman_gain @ self.H
        # Joseph form
        self.kf_covariance = ikh @ predicted_covariance @ ikh.T + kalman_gain @ self.R @ kalman_gain.T

        return float(self.kf_state[0]), float(self.kf_state[1])

    @property
    def state(self) -> Optional[Dict[str, float]]:
        if self.kf_state is None:
            return None
        x, y, vx, vy = (float(v) for v in self.kf_state)
        return {"x": x, "y": y, "vx": vx, "vy": vy}

    @property
    def speed(self) -> float:
        """Speed in m/s derived from the velocity state."""
        if self.kf_state is None:
            return 0.0
        return math.hypot(float(self.kf_state[2]), float(self.kf_state[3]))

    def reset(self) -> None:
        self.kf_state = None
        self.kf_covariance = None
