"""
Double precision 3D vector for astronomical-scale physics.

Positions reach ~1e11 m while single precision carries ~7 significant digits,
so every physics-significant quantity goes through float64.
"""

import math
from typing import Iterator

import numpy as np


class Vector3D:
    """Immutable double-precision 3-vector with the usual arithmetic."""

    __slots__ = ('x', 'y', 'z')

    def __init__(self, x: float = 0.0, y: float = 0.0, z: float = 0.0):
        object.__setattr__(self, 'x', float(x))
        object.__setattr__(self, 'y', float(y))
        object.__setattr__(self, 'z', float(z))

    def __setattr__(self, name, value):
        raise AttributeError("Vector3D is immutable")

    @classmethod
    def zero(cls) -> 'Vector3D':
        return cls(0.0, 0.0, 0.0)

    @classmethod
    def from_array(cls, values) -> 'Vector3D':
        """Build from any length-3 sequence or numpy array."""
        if isinstance(values, Vector3D):
            return values
        arr = np.asarray(values, dtype=np.float64).reshape(-1)
        if arr.shape[0] != 3:
            raise ValueError(f"Expected 3 components, got {arr.shape[0]}")
        return cls(arr[0], arr[1], arr[2])

    def to_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=np.float64)

    # Arithmetic
    def __add__(self, other: 'Vector3D') -> 'Vector3D':
        return Vector3D(self.x + other.x, self.y + other.y, self.z + other.z)

    def __sub__(self, other: 'Vector3D') -> 'Vector3D':
        return Vector3D(self.x - other.x, self.y - other.y, self.z - other.z)

    def __neg__(self) -> 'Vector3D':
        return Vector3D(-self.x, -self.y, -self.z)

    def __mul__(self, scalar: float) -> 'Vector3D':
        return Vector3D(self.x * scalar, self.y * scalar, self.z * scalar)

    __rmul__ = __mul__

    def __truediv__(self, scalar: float) -> 'Vector3D':
        return Vector3D(self.x / scalar, self.y / scalar, self.z / scalar)

    def dot(self, other: 'Vector3D') -> float:
        return self.x * other.x + self.y * other.y + self.z * other.z

    def cross(self, other: 'Vector3D') -> 'Vector3D':
        return Vector3D(
            self.y * other.z - self.z * other.y,
            self.z * other.x - self.x * other.z,
            self.x * other.y - self.y * other.x,
        )

    def scale(self, other: 'Vector3D') -> 'Vector3D':
        """Component-wise product."""
        return Vector3D(self.x * other.x, self.y * other.y, self.z * other.z)

    @property
    def sqr_magnitude(self) -> float:
        return self.x * self.x + self.y * self.y + self.z * self.z

    @property
    def magnitude(self) -> float:
        return math.sqrt(self.sqr_magnitude)

    def normalized(self) -> 'Vector3D':
        """Unit vector in the same direction, or zero for a near-zero vector."""
        mag = self.magnitude
        if mag > 1e-10:
            return self / mag
        return Vector3D.zero()

    def distance(self, other: 'Vector3D') -> float:
        return (self - other).magnitude

    def lerp(self, other: 'Vector3D', t: float) -> 'Vector3D':
        """Linear interpolation with t clamped to [0, 1]."""
        t = max(0.0, min(1.0, t))
        return self + (other - self) * t

    def is_finite(self) -> bool:
        return math.isfinite(self.x) and math.isfinite(self.y) and math.isfinite(self.z)

    # Container protocol
    def __iter__(self) -> Iterator[float]:
        yield self.x
        yield self.y
        yield self.z

    def __len__(self):
        return 3

    def __getitem__(self, index: int) -> float:
        return (self.x, self.y, self.z)[index]

    def __eq__(self, other):
        if not isinstance(other, Vector3D):
            return NotImplemented
        return self.x == other.x and self.y == other.y and self.z == other.z

    def __hash__(self):
        return hash((self.x, self.y, self.z))

    def __reduce__(self):
        return (Vector3D, (self.x, self.y, self.z))

    def __repr__(self):
        return f"Vector3D({self.x:.6e}, {self.y:.6e}, {self.z:.6e})"
