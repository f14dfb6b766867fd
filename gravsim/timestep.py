"""
Timestep Controller
Fixed step (optionally sped up) or an adaptive step from peak acceleration
"""

import numpy as np

from .constants import PhysicalConstants


class TimestepController:
    """
    Chooses dt for the current tick.

    Fixed:    dt = base_dt * time_speed
    Adaptive: dt = sqrt(adaptive_factor / max|a_i|), or base_dt when every
              |a_i| is negligible, clamped to [min_timestep, max_timestep].

    Close encounters push max|a| up and dt down; quiescent systems coast
    with the largest allowed step.
    """

    def __init__(self, use_adaptive: bool = False, min_timestep_s: float = 0.001,
                 max_timestep_s: float = 0.1, adaptive_factor: float = 0.01,
                 time_speed: float = 1.0):
        self.use_adaptive = use_adaptive
        self.min_timestep_s = min_timestep_s
        self.max_timestep_s = max_timestep_s
        self.adaptive_factor = adaptive_factor
        self.time_speed = time_speed
        self.current_timestep_s = None

    @staticmethod
    def max_acceleration(accelerations: np.ndarray) -> float:
        if len(accelerations) == 0:
            return 0.0
        return float(np.max(np.sqrt(np.sum(accelerations**2, axis=1))))

    def adaptive_timestep(self, accelerations: np.ndarray, base_dt_s: float) -> float:
        max_accel = self.max_acceleration(accelerations)
        dt_s = base_dt_s
        if max_accel > PhysicalConstants.near_zero_acceleration:
            dt_s = np.sqrt(self.adaptive_factor / max_accel)
        return float(np.clip(dt_s, self.min_timestep_s, self.max_timestep_s))

    def compute(self, accelerations: np.ndarray, base_dt_s: float) -> float:
        """Timestep for this tick, given the accelerations already computed for it."""
        if self.use_adaptive:
            dt_s = self.adaptive_timestep(accelerations, base_dt_s)
        else:
            dt_s = base_dt_s * self.time_speed
        self.current_timestep_s = dt_s
        return dt_s

    def __repr__(self):
        mode = 'adaptive' if self.use_adaptive else 'fixed'
        return (f"TimestepController({mode}, range=[{self.min_timestep_s}, {self.max_timestep_s}], "
                f"factor={self.adaptive_factor}, speed={self.time_speed})")
