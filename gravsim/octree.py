"""
Barnes-Hut octree for O(N log N) gravitational acceleration queries.

The tree is stored as an arena of flat arrays addressed by node index. Every
tick resets the arena's bump pointer and re-inserts all bodies, so no node
survives past the tick it was built in.

Key idea: if a cubic cell's side divided by the distance to the query point
is below theta, the whole cell acts as one point mass at its center of mass.
Otherwise, descend into its children.

Insertion keeps each node's total mass and center of mass current as it goes:
    empty node    -> body becomes the leaf
    occupied leaf -> subdivide, push the occupant down one level, continue
    internal node -> fold body into mass/COM, descend into its octant

Octant index: (x >= cx) << 2 | (y >= cy) << 1 | (z >= cz)
"""

from typing import List, Optional

import numpy as np
from numba import jit

from .constants import OctreeLimits, PhysicalConstants

NEAR_ZERO_DISTANCE = PhysicalConstants.near_zero_distance
ARENA_OVERFLOW = -1


@jit(nopython=True, nogil=True, cache=True)
def _get_octant(px, py, pz, node, node_center):
    """Return octant index (0-7) for a position relative to a node center."""
    octant = 0
    if px >= node_center[node, 0]:
        octant |= 4
    if py >= node_center[node, 1]:
        octant |= 2
    if pz >= node_center[node, 2]:
        octant |= 1
    return octant


@jit(nopython=True, nogil=True, cache=True)
def _init_node(idx, cx, cy, cz, half_size,
               node_center, node_half_size, node_com, node_mass, node_children, node_body):
    node_center[idx, 0] = cx
    node_center[idx, 1] = cy
    node_center[idx, 2] = cz
    node_half_size[idx] = half_size
    node_com[idx, 0] = 0.0
    node_com[idx, 1] = 0.0
    node_com[idx, 2] = 0.0
    node_mass[idx] = 0.0
    node_body[idx] = -1
    for c in range(8):
        node_children[idx, c] = -1


@jit(nopython=True, nogil=True, cache=True)
def _child_of(node, octant, n_nodes,
              node_center, node_half_size, node_com, node_mass, node_children, node_body):
    """
    Return (child index, updated n_nodes), allocating the child lazily.

    Child index is ARENA_OVERFLOW when the arena is full.
    """
    child = node_children[node, octant]
    if child >= 0:
        return child, n_nodes
    if n_nodes >= node_mass.shape[0]:
        return -1, n_nodes

    offset = node_half_size[node] * 0.5
    cx = node_center[node, 0] + (offset if (octant & 4) != 0 else -offset)
    cy = node_center[node, 1] + (offset if (octant & 2) != 0 else -offset)
    cz = node_center[node, 2] + (offset if (octant & 1) != 0 else -offset)

    child = n_nodes
    _init_node(child, cx, cy, cz, offset,
               node_center, node_half_size, node_com, node_mass, node_children, node_body)
    node_children[node, octant] = child
    return child, n_nodes + 1


@jit(nopython=True, nogil=True, cache=True)
def build_octree(positions, masses, root_center, root_half_size, max_depth,
                 node_center, node_half_size, node_com, node_mass,
                 node_children, node_body, body_next):
    """
    Insert every body into a freshly reset arena.

    Node arrays are preallocated by the caller; body_next chains bodies that
    share a leaf bucket once max_depth is reached.

    Returns:
        Number of nodes used, or ARENA_OVERFLOW if the arena ran out of room.
    """
    N = positions.shape[0]

    _init_node(0, root_center[0], root_center[1], root_center[2], root_half_size,
               node_center, node_half_size, node_com, node_mass, node_children, node_body)
    n_nodes = 1

    for p in range(N):
        px = positions[p, 0]
        py = positions[p, 1]
        pz = positions[p, 2]
        m = masses[p]
        body_next[p] = -1

        current = 0
        depth = 0
        while True:
            if node_mass[current] == 0.0:
                # Empty node: body becomes the leaf
                node_body[current] = p
                node_mass[current] = m
                node_com[current, 0] = px
                node_com[current, 1] = py
                node_com[current, 2] = pz
                break

            head = node_body[current]
            if head >= 0:
                if depth >= max_depth:
                    # Coincident bodies: share the leaf as a bucket
                    new_mass = node_mass[current] + m
                    node_com[current, 0] = (node_com[current, 0] * node_mass[current] + px * m) / new_mass
                    node_com[current, 1] = (node_com[current, 1] * node_mass[current] + py * m) / new_mass
                    node_com[current, 2] = (node_com[current, 2] * node_mass[current] + pz * m) / new_mass
                    node_mass[current] = new_mass
                    body_next[p] = body_next[head]
                    body_next[head] = p
                    break

                # Occupied leaf: move the occupant into its child octant.
                # The node's mass/COM already account for it.
                node_body[current] = -1
                oct_old = _get_octant(positions[head, 0], positions[head, 1], positions[head, 2],
                                      current, node_center)
                child, n_nodes = _child_of(current, oct_old, n_nodes,
                                           node_center, node_half_size, node_com, node_mass,
                                           node_children, node_body)
                if child < 0:
                    return ARENA_OVERFLOW
                node_body[child] = head
                node_mass[child] = masses[head]
                node_com[child, 0] = positions[head, 0]
                node_com[child, 1] = positions[head, 1]
                node_com[child, 2] = positions[head, 2]

            # Internal node: fold body into running mass/COM, then descend
            new_mass = node_mass[current] + m
            node_com[current, 0] = (node_com[current, 0] * node_mass[current] + px * m) / new_mass
            node_com[current, 1] = (node_com[current, 1] * node_mass[current] + py * m) / new_mass
            node_com[current, 2] = (node_com[current, 2] * node_mass[current] + pz * m) / new_mass
            node_mass[current] = new_mass

            octant = _get_octant(px, py, pz, current, node_center)
            child, n_nodes = _child_of(current, octant, n_nodes,
                                       node_center, node_half_size, node_com, node_mass,
                                       node_children, node_body)
            if child < 0:
                return ARENA_OVERFLOW
            current = child
            depth += 1

    return n_nodes


@jit(nopython=True, nogil=True, cache=True)
def acceleration_at(px, py, pz, exclude, theta, G, positions, masses,
                    node_half_size, node_com, node_mass, node_children, node_body, body_next,
                    stack):
    """
    Walk the tree for one query point.

    Args:
        px, py, pz: query position in meters
        exclude: body index that contributes nothing (self-exclusion), or -1
        stack: int64 scratch of length >= 8 * (max_depth + 2)

    Returns:
        (ax, ay, az) in m/s²
    """
    ax = 0.0
    ay = 0.0
    az = 0.0

    stack[0] = 0
    top = 1
    while top > 0:
        top -= 1
        node = stack[top]

        if node_mass[node] == 0.0:
            continue

        head = node_body[node]
        if head >= 0:
            # Leaf: each occupant is a point mass (more than one only in a bucket)
            b = head
            while b >= 0:
                if b != exclude:
                    dx = positions[b, 0] - px
                    dy = positions[b, 1] - py
                    dz = positions[b, 2] - pz
                    r2 = dx*dx + dy*dy + dz*dz
                    r = np.sqrt(r2)
                    if r >= NEAR_ZERO_DISTANCE:
                        f = G * masses[b] / (r2 * r)
                        ax += f * dx
                        ay += f * dy
                        az += f * dz
                b = body_next[b]
            continue

        dx = node_com[node, 0] - px
        dy = node_com[node, 1] - py
        dz = node_com[node, 2] - pz
        r2 = dx*dx + dy*dy + dz*dz
        r = np.sqrt(r2)

        # Opening angle criterion: s/d < theta
        size = 2.0 * node_half_size[node]
        if r >= NEAR_ZERO_DISTANCE and size < theta * r:
            f = G * node_mass[node] / (r2 * r)
            ax += f * dx
            ay += f * dy
            az += f * dz
        else:
            for c in range(8):
                child = node_children[node, c]
                if child >= 0:
                    stack[top] = child
                    top += 1

    return ax, ay, az


@jit(nopython=True, nogil=True, cache=True)
def accelerations_for_range(start, end, theta, G, positions, masses,
                            node_half_size, node_com, node_mass, node_children, node_body, body_next,
                            stack_size, out):
    """Fill out[start:end] with tree accelerations of the bodies in that range."""
    stack = np.empty(stack_size, dtype=np.int64)
    for i in range(start, end):
        ax, ay, az = acceleration_at(
            positions[i, 0], positions[i, 1], positions[i, 2], i, theta, G,
            positions, masses, node_half_size, node_com, node_mass,
            node_children, node_body, body_next, stack
        )
        out[i, 0] = ax
        out[i, 1] = ay
        out[i, 2] = az


class OctreeNode:
    """
    Read-only view of one arena node.

    Attributes:
        index: arena index
        center_m: geometric center of the cubic cell
        half_size_m: half of the cell side
        size_m: full cell side
        center_of_mass_m: mass-weighted position of everything beneath
        total_mass_kg: summed mass of everything beneath
        body_indices: occupants if this is a leaf, else empty
    """

    def __init__(self, tree: 'BarnesHutOctree', index: int):
        self._tree = tree
        self.index = index
        self.center_m = tree.node_center[index].copy()
        self.half_size_m = float(tree.node_half_size[index])
        self.size_m = 2.0 * self.half_size_m
        self.center_of_mass_m = tree.node_com[index].copy()
        self.total_mass_kg = float(tree.node_mass[index])
        self.body_indices = tree.leaf_bodies(index)

    def is_leaf(self) -> bool:
        return len(self.body_indices) > 0

    def is_empty(self) -> bool:
        return self.total_mass_kg == 0.0

    @property
    def body_index(self) -> Optional[int]:
        return self.body_indices[0] if self.body_indices else None

    @property
    def children(self) -> List[Optional['OctreeNode']]:
        """Eight slots in octant order; unallocated octants are None."""
        return [
            OctreeNode(self._tree, int(c)) if c >= 0 else None
            for c in self._tree.node_children[self.index]
        ]

    def __repr__(self):
        kind = 'leaf' if self.is_leaf() else ('empty' if self.is_empty() else 'internal')
        return f"OctreeNode({kind}, idx={self.index}, mass_kg={self.total_mass_kg:.2e}, size_m={self.size_m:.2e})"


class BarnesHutOctree:
    """
    Barnes-Hut octree over a borrowed (positions, masses) snapshot.

    Usage:
        tree = BarnesHutOctree(theta=0.5)
        tree.build(positions_m, masses_kg)
        tree.calculate_accelerations(0, N, out)

    The arena arrays are kept between builds and grown on overflow, so a
    steady-state tick allocates nothing.
    """

    def __init__(self, theta: float = 0.5, G: float = PhysicalConstants.G,
                 max_depth: int = OctreeLimits.max_depth):
        """
        Args:
            theta: opening angle (0 = exact, 0.5 = typical, 1.0 = aggressive)
            G: gravitational constant
            max_depth: depth at which coincident bodies share a leaf bucket
        """
        self.theta = theta
        self.G = G
        self.max_depth = max_depth
        self.stack_size = 8 * (max_depth + 2)

        self.positions_m: Optional[np.ndarray] = None
        self.masses_kg: Optional[np.ndarray] = None
        self.n_nodes = 0
        self.root_center_m = np.zeros(3)
        self.root_half_size_m = 0.0

        self._allocate(OctreeLimits.min_capacity, 0)

    def _allocate(self, capacity: int, n_bodies: int) -> None:
        self.capacity = capacity
        self.node_center = np.zeros((capacity, 3), dtype=np.float64)
        self.node_half_size = np.zeros(capacity, dtype=np.float64)
        self.node_com = np.zeros((capacity, 3), dtype=np.float64)
        self.node_mass = np.zeros(capacity, dtype=np.float64)
        self.node_children = np.full((capacity, 8), -1, dtype=np.int64)
        self.node_body = np.full(capacity, -1, dtype=np.int64)
        self.body_next = np.full(n_bodies, -1, dtype=np.int64)

    @staticmethod
    def compute_bounds(positions_m: np.ndarray):
        """
        Root cube for a set of positions.

        Returns (center, half_size): center is the midpoint of the extent,
        side is the largest extent inflated by the bounds margin.
        """
        min_corner = np.min(positions_m, axis=0)
        max_corner = np.max(positions_m, axis=0)
        center = (min_corner + max_corner) / 2.0
        side = float(np.max(max_corner - min_corner)) * OctreeLimits.bounds_margin
        if not side > 0.0:
            # All bodies coincide: any cube around them works
            side = max(1.0, float(np.max(np.abs(center))) * 1e-9)
        return center, side / 2.0

    def build(self, positions_m: np.ndarray, masses_kg: np.ndarray) -> None:
        """Reset the arena and insert every body."""
        self.positions_m = np.ascontiguousarray(positions_m, dtype=np.float64).copy()
        self.masses_kg = np.ascontiguousarray(masses_kg, dtype=np.float64)
        N = len(self.positions_m)

        if N == 0:
            self.n_nodes = 0
            return

        if self.body_next.shape[0] != N:
            self.body_next = np.full(N, -1, dtype=np.int64)
        if self.capacity < 2 * N:
            # Roughly 2N nodes for well-separated bodies
            self._allocate(max(OctreeLimits.min_capacity, 4 * N), N)

        self.root_center_m, self.root_half_size_m = self.compute_bounds(self.positions_m)

        while True:
            n_nodes = build_octree(
                self.positions_m, self.masses_kg, self.root_center_m, self.root_half_size_m,
                self.max_depth, self.node_center, self.node_half_size, self.node_com,
                self.node_mass, self.node_children, self.node_body, self.body_next
            )
            if n_nodes != ARENA_OVERFLOW:
                break
            self._allocate(self.capacity * 2, N)

        self.n_nodes = n_nodes

    @property
    def is_built(self) -> bool:
        return self.n_nodes > 0

    @property
    def root(self) -> Optional[OctreeNode]:
        if not self.is_built:
            return None
        return OctreeNode(self, 0)

    def leaf_bodies(self, node: int) -> List[int]:
        """Body indices held by a leaf (empty list for internal/empty nodes)."""
        bodies = []
        b = int(self.node_body[node])
        while b >= 0:
            bodies.append(b)
            b = int(self.body_next[b])
        return bodies

    def calculate_accelerations(self, start: int, end: int, out: np.ndarray) -> None:
        """Write accelerations of bodies [start, end) into out; safe to call from worker threads."""
        accelerations_for_range(
            start, end, self.theta, self.G, self.positions_m, self.masses_kg,
            self.node_half_size, self.node_com, self.node_mass,
            self.node_children, self.node_body, self.body_next,
            self.stack_size, out
        )

    def calculate_acceleration(self, body_idx: int) -> np.ndarray:
        """Acceleration (3,) on one body in m/s²."""
        out = np.zeros((len(self.positions_m), 3))
        self.calculate_accelerations(body_idx, body_idx + 1, out)
        return out[body_idx]

    def calculate_all_accelerations(self) -> np.ndarray:
        """Accelerations (N, 3) of every body, single-threaded."""
        out = np.zeros((len(self.positions_m), 3))
        if self.is_built:
            self.calculate_accelerations(0, len(self.positions_m), out)
        return out

    def acceleration_at(self, point_m, exclude: Optional[int] = None) -> np.ndarray:
        """
        Acceleration (3,) at an arbitrary point.

        Args:
            point_m: query position (3,)
            exclude: body index to leave out of the sum, if any
        """
        if not self.is_built:
            return np.zeros(3)
        point_m = np.asarray(point_m, dtype=np.float64)
        stack = np.empty(self.stack_size, dtype=np.int64)
        ax, ay, az = acceleration_at(
            float(point_m[0]), float(point_m[1]), float(point_m[2]),
            -1 if exclude is None else int(exclude), self.theta, self.G,
            self.positions_m, self.masses_kg, self.node_half_size, self.node_com,
            self.node_mass, self.node_children, self.node_body, self.body_next, stack
        )
        return np.array([ax, ay, az])

    def __repr__(self):
        return f"BarnesHutOctree(theta={self.theta}, nodes={self.n_nodes}, capacity={self.capacity})"
