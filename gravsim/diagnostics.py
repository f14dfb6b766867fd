"""
Conservation diagnostics: energy and momentum of the body set.

Energy drift is a warning, never an error: the caller decides whether to
shrink the timestep or switch integrators.
"""

import warnings
from typing import Optional

import numpy as np

from .bodies import BodyStore
from .constants import PhysicalConstants


class EnergyDriftWarning(RuntimeWarning):
    """Total energy moved further from its baseline than the configured tolerance."""


def potential_energy(positions_m: np.ndarray, masses_kg: np.ndarray, softening_m: float,
                     G: float = PhysicalConstants.G) -> float:
    """Softened gravitational potential energy in Joules, using vectorized operations."""
    N = len(positions_m)
    if N < 2:
        return 0.0

    # Pairwise distance calculation, shape (N, N)
    r_vec_m = positions_m[np.newaxis, :, :] - positions_m[:, np.newaxis, :]
    r_m = np.sqrt(np.sum(r_vec_m**2, axis=2))
    r_soft_m = np.sqrt(r_m**2 + softening_m**2)

    mass_products = masses_kg[:, np.newaxis] * masses_kg[np.newaxis, :]

    # Upper triangle only to avoid double counting and the diagonal
    i_upper, j_upper = np.triu_indices(N, k=1)
    return float(-G * np.sum(mass_products[i_upper, j_upper] / r_soft_m[i_upper, j_upper]))


def total_energy(store: BodyStore, softening_m: float, G: float = PhysicalConstants.G) -> float:
    """Kinetic + potential energy in Joules."""
    return store.kinetic_energy() + potential_energy(store.positions, store.masses, softening_m, G)


def relative_drift(value: float, baseline: float) -> float:
    """|value - baseline| / |baseline|, or the absolute difference when baseline is zero."""
    if baseline == 0.0:
        return abs(value - baseline)
    return abs(value - baseline) / abs(baseline)


class EnergyMonitor:
    """
    Periodic energy check against a baseline taken before the first tick.

    Attributes:
        interval: ticks between checks (0 disables the monitor)
        tolerance: relative drift above which EnergyDriftWarning is emitted
        baseline_J: energy at reset()
        last_drift: relative drift at the latest check, or None
    """

    def __init__(self, softening_m: float, G: float = PhysicalConstants.G,
                 interval: int = 0, tolerance: float = 1e-3):
        self.softening_m = softening_m
        self.G = G
        self.interval = interval
        self.tolerance = tolerance

        self.baseline_J: Optional[float] = None
        self.last_drift: Optional[float] = None
        self._ticks = 0

        # History tracking
        self.time_history = []
        self.energy_history = []

    @property
    def enabled(self) -> bool:
        return self.interval > 0

    def reset(self, store: BodyStore) -> None:
        self.baseline_J = total_energy(store, self.softening_m, self.G)
        self.last_drift = 0.0
        self._ticks = 0
        self.time_history = [store.time]
        self.energy_history = [self.baseline_J]

    def after_tick(self, store: BodyStore) -> Optional[float]:
        """Count a tick; every `interval` ticks recompute energy and warn on excess drift."""
        if not self.enabled:
            return None
        if self.baseline_J is None:
            self.reset(store)
            return 0.0

        self._ticks += 1
        if self._ticks % self.interval != 0:
            return None
        return self.check(store)

    def check(self, store: BodyStore) -> float:
        energy_J = total_energy(store, self.softening_m, self.G)
        if self.baseline_J is None:
            self.baseline_J = energy_J
        drift = relative_drift(energy_J, self.baseline_J)

        self.last_drift = drift
        self.time_history.append(store.time)
        self.energy_history.append(energy_J)

        if drift > self.tolerance:
            warnings.warn(
                f"Energy drift {drift * 100:.3f}% exceeds tolerance {self.tolerance * 100:.3f}% "
                f"at t={store.time:.4e} s; consider a smaller timestep or a higher-order integrator",
                EnergyDriftWarning,
                stacklevel=3,
            )
        return drift
