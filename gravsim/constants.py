"""
Physical Constants and Method Selectors
Shared numeric guards and the enums used to pick force/integration strategies
"""

from enum import Enum


class PhysicalConstants:
    """Fundamental physical constants in SI units"""

    # Physical constants
    G = 6.67430e-11  # Gravitational constant [m^3 kg^-1 s^-2]

    # Default fixed step used when the caller supplies none
    physics_time_step_s = 0.01

    # Numerical guards
    near_zero_distance = 1e-10  # Below this, a pair contributes no force
    near_zero_acceleration = 1e-10  # Below this, adaptive dt falls back to base step


class OctreeLimits:
    """Sizing limits for the Barnes-Hut arena"""

    max_depth = 64  # Coincident bodies share a leaf bucket below this depth
    bounds_margin = 1.1  # Root cube side = largest extent * margin
    min_capacity = 64


class ForceMethod(Enum):
    BRUTE_FORCE = "brute_force"  # O(n²), exact up to softening
    BARNES_HUT = "barnes_hut"  # O(n log n), accuracy set by theta


class IntegrationMethod(Enum):
    EULER = "euler"  # Fastest, least accurate
    VELOCITY_VERLET = "velocity_verlet"  # Symplectic, recommended default
    RK4 = "rk4"  # Slowest, most accurate
