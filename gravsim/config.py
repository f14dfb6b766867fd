"""
Simulation Configuration
Validated options for force method, integrator, timestep and worker pool
"""

import math
from typing import Optional, Union

from .constants import ForceMethod, IntegrationMethod, PhysicalConstants


def _coerce_enum(enum_cls, value, option: str):
    """Accept an enum member, its value ('barnes_hut') or its name ('BARNES_HUT')."""
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        # 'BarnesHut', 'barnes-hut' and 'barnes_hut' all name the same member
        key = value.strip().lower().replace('-', '').replace('_', '')
        for member in enum_cls:
            if key == member.value.replace('_', ''):
                return member
    choices = ', '.join(m.value for m in enum_cls)
    raise ValueError(f"Invalid {option}: {value!r} (expected one of: {choices})")


class SimulationConfig:
    """Parameters for the N-body core"""

    def __init__(self, theta: float = 0.5, softening: float = 0.01,
                 force_method: Union[ForceMethod, str] = ForceMethod.BARNES_HUT,
                 integration_method: Union[IntegrationMethod, str] = IntegrationMethod.VELOCITY_VERLET,
                 use_adaptive_timestep: bool = False, min_timestep: float = 0.001,
                 max_timestep: float = 0.1, adaptive_factor: float = 0.01,
                 base_timestep: float = PhysicalConstants.physics_time_step_s,
                 time_speed: float = 1.0, gravitational_constant: float = PhysicalConstants.G,
                 use_parallel: bool = True, batch_size: int = 32,
                 max_workers: Optional[int] = None, energy_check_interval: int = 0,
                 energy_drift_tolerance: float = 1e-3):
        """
        Initialize simulation configuration.

        Args:
            theta: Barnes-Hut opening angle in (0, 1]; 0.5 is typical
            softening: length added in quadrature to pair distances (> 0)
            force_method: 'brute_force' or 'barnes_hut'
            integration_method: 'euler', 'velocity_verlet' or 'rk4'
            use_adaptive_timestep: derive dt from peak acceleration each tick
            min_timestep: lower clamp for adaptive dt (s)
            max_timestep: upper clamp for adaptive dt (s)
            adaptive_factor: dt = sqrt(adaptive_factor / max|a|)
            base_timestep: step used when the caller passes none (s)
            time_speed: fixed-step multiplier
            gravitational_constant: G in the caller's unit system
            use_parallel: run per-body batches on a thread pool
            batch_size: bodies per batch (1-128)
            max_workers: thread count (None = CPU count)
            energy_check_interval: ticks between energy checks (0 = off)
            energy_drift_tolerance: relative drift that triggers a warning
        """
        self.theta = theta
        self.softening = softening
        self.force_method = _coerce_enum(ForceMethod, force_method, 'force_method')
        self.integration_method = _coerce_enum(IntegrationMethod, integration_method, 'integration_method')
        self.use_adaptive_timestep = bool(use_adaptive_timestep)
        self.min_timestep = min_timestep
        self.max_timestep = max_timestep
        self.adaptive_factor = adaptive_factor
        self.base_timestep = base_timestep
        self.time_speed = time_speed
        self.gravitational_constant = gravitational_constant
        self.use_parallel = bool(use_parallel)
        self.batch_size = batch_size
        self.max_workers = max_workers
        self.energy_check_interval = energy_check_interval
        self.energy_drift_tolerance = energy_drift_tolerance

        self._validate()

    def _validate(self) -> None:
        """Reject anything that would make the numerics undefined."""
        def positive(name):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or not math.isfinite(value) or value <= 0:
                raise ValueError(f"{name} must be a positive finite number, got {value!r}")

        positive('theta')
        if self.theta > 1.0:
            raise ValueError(f"theta must be in (0, 1], got {self.theta}")

        for name in ('softening', 'min_timestep', 'max_timestep', 'adaptive_factor',
                     'base_timestep', 'time_speed', 'gravitational_constant',
                     'energy_drift_tolerance'):
            positive(name)

        if self.min_timestep > self.max_timestep:
            raise ValueError(
                f"min_timestep ({self.min_timestep}) must not exceed max_timestep ({self.max_timestep})"
            )

        if not isinstance(self.batch_size, int) or not 1 <= self.batch_size <= 128:
            raise ValueError(f"batch_size must be an integer in [1, 128], got {self.batch_size!r}")

        if self.max_workers is not None and (not isinstance(self.max_workers, int) or self.max_workers < 1):
            raise ValueError(f"max_workers must be a positive integer or None, got {self.max_workers!r}")

        if not isinstance(self.energy_check_interval, int) or self.energy_check_interval < 0:
            raise ValueError(
                f"energy_check_interval must be a non-negative integer, got {self.energy_check_interval!r}"
            )

    def as_dict(self) -> dict:
        return {
            'theta': self.theta,
            'softening': self.softening,
            'force_method': self.force_method,
            'integration_method': self.integration_method,
            'use_adaptive_timestep': self.use_adaptive_timestep,
            'min_timestep': self.min_timestep,
            'max_timestep': self.max_timestep,
            'adaptive_factor': self.adaptive_factor,
            'base_timestep': self.base_timestep,
            'time_speed': self.time_speed,
            'gravitational_constant': self.gravitational_constant,
            'use_parallel': self.use_parallel,
            'batch_size': self.batch_size,
            'max_workers': self.max_workers,
            'energy_check_interval': self.energy_check_interval,
            'energy_drift_tolerance': self.energy_drift_tolerance,
        }

    def replace(self, **overrides) -> 'SimulationConfig':
        """Copy with some options changed (validated again)."""
        options = self.as_dict()
        unknown = set(overrides) - set(options)
        if unknown:
            raise ValueError(f"Unknown configuration option(s): {', '.join(sorted(unknown))}")
        options.update(overrides)
        return SimulationConfig(**options)

    def __eq__(self, other):
        if not isinstance(other, SimulationConfig):
            return NotImplemented
        return self.as_dict() == other.as_dict()

    def __str__(self):
        timestep = (f"adaptive [{self.min_timestep}, {self.max_timestep}] s, factor={self.adaptive_factor}"
                    if self.use_adaptive_timestep
                    else f"fixed {self.base_timestep} s x{self.time_speed}")
        return (f"Simulation Config:\n"
                f"  Force = {self.force_method.value} (θ = {self.theta})\n"
                f"  Integrator = {self.integration_method.value}\n"
                f"  Softening = {self.softening}\n"
                f"  Timestep = {timestep}\n"
                f"  Parallel = {self.use_parallel} (batch = {self.batch_size}, workers = {self.max_workers or 'auto'})\n"
                f"  G = {self.gravitational_constant:.5e}")
