"""
Body and Body Store
Flat float64 arrays of per-body state; every other component borrows views
"""

import itertools
import math
from typing import Iterable, List, Optional, Protocol, Sequence, Tuple, Union

import numpy as np

from .constants import PhysicalConstants
from .vector3d import Vector3D


class Body:
    """A single gravitating body with externally supplied initial conditions"""

    _next_id = itertools.count()

    def __init__(self, position, velocity, mass_kg: float, body_id: Optional[int] = None):
        """
        Initialize a body with position/velocity in meters and m/s.

        Bodies built without an id get a fresh one, unique within the process.
        """
        if body_id is None:
            body_id = next(Body._next_id)
        mass_kg = float(mass_kg)
        if not math.isfinite(mass_kg) or mass_kg <= 0.0:
            raise ValueError(f"Body mass must be positive and finite, got {mass_kg}")

        self.pos = Vector3D.from_array(position)
        self.vel = Vector3D.from_array(velocity)
        if not (self.pos.is_finite() and self.vel.is_finite()):
            raise ValueError(f"Body {body_id} has non-finite initial conditions")

        self.mass_kg = mass_kg
        self.id = body_id
        self.acc = Vector3D.zero()

    @classmethod
    def from_surface_gravity(cls, position, velocity, radius_m: float, surface_gravity_mps2: float,
                             body_id: Optional[int] = None, G: float = PhysicalConstants.G) -> 'Body':
        """
        Create a body whose mass is derived from radius and surface gravity.

        g = G m / r²  →  m = g r² / G
        """
        if radius_m <= 0.0 or surface_gravity_mps2 <= 0.0:
            raise ValueError("Radius and surface gravity must be positive")
        mass_kg = surface_gravity_mps2 * radius_m * radius_m / G
        return cls(position, velocity, mass_kg, body_id=body_id)

    def __repr__(self):
        return f"Body(id={self.id}, mass_kg={self.mass_kg:.2e} kg, pos={self.pos})"


class BodyStateProvider(Protocol):
    """Anything that can hand the core its current set of bodies."""

    def get_bodies(self) -> Sequence[Body]:
        ...


class RenderPositionSink(Protocol):
    """Receives committed positions after every tick, shape (N, 3)."""

    def update_positions(self, positions: np.ndarray) -> None:
        ...


BodySource = Union[BodyStateProvider, Iterable[Body]]


def resolve_bodies(source: BodySource) -> List[Body]:
    """Accept either a provider or a plain iterable of bodies."""
    get_bodies = getattr(source, 'get_bodies', None)
    if callable(get_bodies):
        return list(get_bodies())
    return list(source)


class BodyStore:
    """
    Contiguous per-body state.

    Attributes:
        masses: (N,) kg
        positions: (N, 3) m
        velocities: (N, 3) m/s
        accelerations: (N, 3) m/s², recomputed every evaluation
        ids: (N,) stable identities carried over from the source bodies

    Adding or removing bodies rebuilds every array. This only happens
    between ticks; force evaluation and integration never see a resize.
    """

    def __init__(self, bodies: Optional[BodySource] = None):
        self.masses = np.zeros(0, dtype=np.float64)
        self.positions = np.zeros((0, 3), dtype=np.float64)
        self.velocities = np.zeros((0, 3), dtype=np.float64)
        self.accelerations = np.zeros((0, 3), dtype=np.float64)
        self.ids = np.zeros(0, dtype=np.int64)
        self.time = 0.0

        if bodies is not None:
            self.rebuild(bodies)

    def rebuild(self, bodies: BodySource) -> None:
        """Replace the whole body set; ids must be unique."""
        body_list = resolve_bodies(bodies)
        n = len(body_list)

        ids = [b.id for b in body_list]
        if len(set(ids)) != n:
            duplicates = sorted({i for i in ids if ids.count(i) > 1})
            raise ValueError(f"Duplicate body ids: {duplicates}")

        self.masses = np.array([b.mass_kg for b in body_list], dtype=np.float64).reshape(n)
        self.positions = np.array([b.pos.to_array() for b in body_list], dtype=np.float64).reshape(n, 3)
        self.velocities = np.array([b.vel.to_array() for b in body_list], dtype=np.float64).reshape(n, 3)
        self.accelerations = np.array([b.acc.to_array() for b in body_list], dtype=np.float64).reshape(n, 3)
        self.ids = np.array(ids, dtype=np.int64).reshape(n)

    def add_body(self, body: Body) -> int:
        """Append a body and return its index."""
        bodies = self.to_bodies()
        bodies.append(body)
        self.rebuild(bodies)
        return len(bodies) - 1

    def remove_body(self, index: int) -> Body:
        """Remove the body at index; later indices shift down by one."""
        bodies = self.to_bodies()
        removed = bodies.pop(index)
        self.rebuild(bodies)
        return removed

    def to_bodies(self) -> List[Body]:
        bodies = []
        for i in range(self.body_count()):
            body = Body(self.positions[i], self.velocities[i], self.masses[i], body_id=int(self.ids[i]))
            body.acc = Vector3D.from_array(self.accelerations[i])
            bodies.append(body)
        return bodies

    def copy(self) -> 'BodyStore':
        clone = BodyStore()
        clone.masses = self.masses.copy()
        clone.positions = self.positions.copy()
        clone.velocities = self.velocities.copy()
        clone.accelerations = self.accelerations.copy()
        clone.ids = self.ids.copy()
        clone.time = self.time
        return clone

    # Per-body accessors
    def body_count(self) -> int:
        return self.masses.shape[0]

    def mass(self, i: int) -> float:
        return float(self.masses[i])

    def position(self, i: int) -> Vector3D:
        return Vector3D.from_array(self.positions[i])

    def velocity(self, i: int) -> Vector3D:
        return Vector3D.from_array(self.velocities[i])

    def acceleration(self, i: int) -> Vector3D:
        return Vector3D.from_array(self.accelerations[i])

    def set_position(self, i: int, position) -> None:
        self.positions[i] = Vector3D.from_array(position).to_array()

    def set_velocity(self, i: int, velocity) -> None:
        self.velocities[i] = Vector3D.from_array(velocity).to_array()

    # Bulk accessors
    def get_positions(self) -> np.ndarray:
        """Get all positions as a (N, 3) copy."""
        return self.positions.copy()

    def get_velocities(self) -> np.ndarray:
        """Get all velocities as a (N, 3) copy."""
        return self.velocities.copy()

    def get_masses(self) -> np.ndarray:
        return self.masses.copy()

    def get_accelerations(self) -> np.ndarray:
        return self.accelerations.copy()

    def set_positions(self, positions: np.ndarray) -> None:
        self.positions[:] = positions

    def set_velocities(self, velocities: np.ndarray) -> None:
        self.velocities[:] = velocities

    def shift_origin(self, offset) -> None:
        """Translate every position by -offset (floating origin recentring)."""
        self.positions -= Vector3D.from_array(offset).to_array()

    # Aggregates
    def kinetic_energy(self) -> float:
        """Total kinetic energy in Joules."""
        v2 = np.sum(self.velocities**2, axis=1)
        return float(0.5 * np.sum(self.masses * v2))

    def total_momentum(self) -> np.ndarray:
        """Total linear momentum (3,) in kg m/s."""
        return np.sum(self.masses[:, np.newaxis] * self.velocities, axis=0)

    def center_of_mass(self) -> np.ndarray:
        if self.body_count() == 0:
            return np.zeros(3)
        return np.sum(self.masses[:, np.newaxis] * self.positions, axis=0) / np.sum(self.masses)

    def bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        """Axis-aligned (min_corner, max_corner) of current positions."""
        return np.min(self.positions, axis=0), np.max(self.positions, axis=0)

    def __len__(self):
        return self.body_count()

    def __repr__(self):
        return f"BodyStore(n={self.body_count()}, t={self.time:.2e}s)"
