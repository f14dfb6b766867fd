"""
Force Evaluators
Fill an (N, 3) acceleration array from borrowed positions and masses
"""

from typing import Optional

import numpy as np
from numba import jit

from .constants import ForceMethod, PhysicalConstants
from .octree import BarnesHutOctree
from .parallel import WorkerPool

NEAR_ZERO_DISTANCE = PhysicalConstants.near_zero_distance


@jit(nopython=True, nogil=True, cache=True)
def direct_acceleration_at(px, py, pz, exclude, positions, masses, softening, G):
    """
    Softened pairwise sum at one point.

    a += G m_j normalize(p_j - p) / (|p_j - p|² + ε²)

    Pairs closer than NEAR_ZERO_DISTANCE have no direction and contribute nothing.
    """
    eps2 = softening * softening
    ax = 0.0
    ay = 0.0
    az = 0.0
    for j in range(positions.shape[0]):
        if j == exclude:
            continue

        dx = positions[j, 0] - px
        dy = positions[j, 1] - py
        dz = positions[j, 2] - pz
        r2 = dx*dx + dy*dy + dz*dz
        r = np.sqrt(r2)
        if r < NEAR_ZERO_DISTANCE:
            continue

        f = G * masses[j] / ((r2 + eps2) * r)
        ax += f * dx
        ay += f * dy
        az += f * dz

    return ax, ay, az


@jit(nopython=True, nogil=True, cache=True)
def direct_accelerations_for_range(start, end, positions, masses, softening, G, out):
    """Direct O(N) sum for each body in [start, end); writes only out[start:end]."""
    for i in range(start, end):
        ax, ay, az = direct_acceleration_at(
            positions[i, 0], positions[i, 1], positions[i, 2], i, positions, masses, softening, G
        )
        out[i, 0] = ax
        out[i, 1] = ay
        out[i, 2] = az


class ForceEvaluator:
    """
    Base class for acceleration strategies.

    Subclasses implement evaluate(); every body's acceleration is written
    exactly once per call and never read back during the same pass.
    """

    method: ForceMethod

    def __init__(self, softening_m: float, G: float = PhysicalConstants.G,
                 pool: Optional[WorkerPool] = None):
        self.softening_m = softening_m
        self.G = G
        self.pool = pool if pool is not None else WorkerPool(enabled=False)
        self.evaluation_count = 0

    def evaluate(self, positions_m: np.ndarray, masses_kg: np.ndarray, out: np.ndarray) -> np.ndarray:
        """
        Compute accelerations for every body.

        Args:
            positions_m: (N, 3) positions, borrowed
            masses_kg: (N,) masses, borrowed
            out: (N, 3) destination, overwritten

        Returns:
            out
        """
        raise NotImplementedError

    def acceleration_at(self, point_m, exclude: Optional[int] = None,
                        positions_m: Optional[np.ndarray] = None,
                        masses_kg: Optional[np.ndarray] = None) -> np.ndarray:
        """Acceleration (3,) at an arbitrary point."""
        raise NotImplementedError


class BruteForceEvaluator(ForceEvaluator):
    """
    Direct O(N²) pairwise summation, exact up to softening.
    Good for small body counts (< ~100).
    """

    method = ForceMethod.BRUTE_FORCE

    def evaluate(self, positions_m, masses_kg, out):
        positions_m = np.ascontiguousarray(positions_m, dtype=np.float64)
        masses_kg = np.ascontiguousarray(masses_kg, dtype=np.float64)
        softening_m = self.softening_m
        G = self.G

        def _batch(start: int, end: int) -> None:
            direct_accelerations_for_range(start, end, positions_m, masses_kg, softening_m, G, out)

        self.pool.run(_batch, len(positions_m))
        self.evaluation_count += 1
        return out

    def acceleration_at(self, point_m, exclude=None, positions_m=None, masses_kg=None):
        point_m = np.asarray(point_m, dtype=np.float64)
        ax, ay, az = direct_acceleration_at(
            float(point_m[0]), float(point_m[1]), float(point_m[2]),
            -1 if exclude is None else int(exclude),
            np.ascontiguousarray(positions_m, dtype=np.float64),
            np.ascontiguousarray(masses_kg, dtype=np.float64),
            self.softening_m, self.G
        )
        return np.array([ax, ay, az])


class BarnesHutEvaluator(ForceEvaluator):
    """
    O(N log N) octree approximation with accuracy set by theta.

    The octree is rebuilt on every evaluate() call and then shared read-only
    by every worker.
    """

    method = ForceMethod.BARNES_HUT

    def __init__(self, theta: float, softening_m: float, G: float = PhysicalConstants.G,
                 pool: Optional[WorkerPool] = None):
        super().__init__(softening_m, G=G, pool=pool)
        self.theta = theta
        self.octree = BarnesHutOctree(theta=theta, G=G)

    def evaluate(self, positions_m, masses_kg, out):
        self.octree.build(positions_m, masses_kg)
        tree = self.octree

        def _batch(start: int, end: int) -> None:
            tree.calculate_accelerations(start, end, out)

        self.pool.run(_batch, len(positions_m))
        self.evaluation_count += 1
        return out

    def is_current_for(self, positions_m: np.ndarray) -> bool:
        """True if the octree was built from exactly these positions."""
        built = self.octree.positions_m
        return (self.octree.is_built and built is not None
                and built.shape == positions_m.shape and np.array_equal(built, positions_m))

    def acceleration_at(self, point_m, exclude=None, positions_m=None, masses_kg=None):
        if positions_m is not None and not self.is_current_for(positions_m):
            self.octree.build(positions_m, masses_kg)
        return self.octree.acceleration_at(point_m, exclude=exclude)


def create_force_evaluator(method: ForceMethod, theta: float, softening_m: float,
                           G: float = PhysicalConstants.G,
                           pool: Optional[WorkerPool] = None) -> ForceEvaluator:
    """Pick the strategy once per configuration; the per-body loop never branches on it."""
    if method == ForceMethod.BARNES_HUT:
        return BarnesHutEvaluator(theta=theta, softening_m=softening_m, G=G, pool=pool)
    if method == ForceMethod.BRUTE_FORCE:
        return BruteForceEvaluator(softening_m=softening_m, G=G, pool=pool)
    raise ValueError(f"Unknown force method: {method!r}")
