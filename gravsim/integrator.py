"""
N-Body Integrators
Advance positions and velocities by one tick given a force callback
"""

from enum import Enum
from typing import Callable, Dict, Optional, Tuple

import numpy as np

from .bodies import BodyStore
from .constants import IntegrationMethod
from .parallel import WorkerPool

# evaluate(positions, out) fills out with accelerations at those positions
AccelerationFn = Callable[[np.ndarray, np.ndarray], np.ndarray]


class IntegrationError(RuntimeError):
    """A stage produced non-finite state; the tick was not applied."""


class TickPhase(Enum):
    IDLE = "idle"
    ACCELERATION_COMPUTED = "acceleration_computed"
    POSITION_ADVANCED = "position_advanced"
    ACCELERATION_RECOMPUTED = "acceleration_recomputed"
    VELOCITY_ADVANCED = "velocity_advanced"
    TICK_COMPLETE = "tick_complete"


class Integrator:
    """
    Base class for N-body integration.

    Subclasses implement _advance(), which writes only into scratch arrays.
    The Body Store is touched once, in _commit(), after every stage has
    succeeded, so a tick is applied completely or not at all.
    """

    method: IntegrationMethod
    _scratch_names: Tuple[str, ...] = ('pos', 'vel')

    def __init__(self, pool: Optional[WorkerPool] = None):
        self.pool = pool if pool is not None else WorkerPool(enabled=False)
        self.phase = TickPhase.IDLE
        self._scratch: Dict[str, np.ndarray] = {}
        self._scratch_n = -1

    def _ensure_scratch(self, n: int) -> None:
        """(Re)allocate scratch only when the body count changes."""
        if n == self._scratch_n:
            return
        self._scratch = {name: np.zeros((n, 3), dtype=np.float64) for name in self._scratch_names}
        self._scratch_n = n

    def step(self, store: BodyStore, accelerations: np.ndarray, dt_s: float,
             evaluate: AccelerationFn) -> None:
        """
        Take one timestep.

        Args:
            store: body state, mutated only on success
            accelerations: (N, 3) accelerations at the store's current positions
            dt_s: timestep in seconds
            evaluate: force callback for multi-stage methods
        """
        n = store.body_count()
        if n == 0:
            return
        self._ensure_scratch(n)
        self.phase = TickPhase.ACCELERATION_COMPUTED

        new_pos, new_vel, new_acc = self._advance(
            store.positions, store.velocities, accelerations, dt_s, evaluate
        )
        self._commit(store, new_pos, new_vel, new_acc, dt_s)

    def _advance(self, pos, vel, acc, dt_s, evaluate):
        raise NotImplementedError

    def _commit(self, store, new_pos, new_vel, new_acc, dt_s) -> None:
        if not (np.all(np.isfinite(new_pos)) and np.all(np.isfinite(new_vel))):
            self.phase = TickPhase.IDLE
            raise IntegrationError(
                f"{self.__class__.__name__} produced non-finite state at t={store.time:.6e} s "
                f"(dt={dt_s:.3e} s); body state left unchanged"
            )
        store.positions[:] = new_pos
        store.velocities[:] = new_vel
        store.accelerations[:] = new_acc
        store.time += dt_s
        self.phase = TickPhase.TICK_COMPLETE

    def __repr__(self):
        return f"{self.__class__.__name__}(pool={self.pool!r})"


class EulerIntegrator(Integrator):
    """
    Semi-implicit Euler: v += a dt; x += v dt
    First order, cheapest per tick, largest long-run energy error
    """

    method = IntegrationMethod.EULER

    def _advance(self, pos, vel, acc, dt_s, evaluate):
        new_pos = self._scratch['pos']
        new_vel = self._scratch['vel']

        def _batch(start, end):
            new_vel[start:end] = vel[start:end] + acc[start:end] * dt_s
            new_pos[start:end] = pos[start:end] + new_vel[start:end] * dt_s

        self.pool.run(_batch, len(pos))
        self.phase = TickPhase.VELOCITY_ADVANCED
        return new_pos, new_vel, acc


class VelocityVerletIntegrator(Integrator):
    """
    Velocity Verlet, second-order symplectic and time-reversible.

    x(t+dt) = x + v dt + ½ a dt²
    a'      = a(x(t+dt))
    v(t+dt) = v + ½ (a + a') dt
    """

    method = IntegrationMethod.VELOCITY_VERLET
    _scratch_names = ('pos', 'vel', 'acc')

    def _advance(self, pos, vel, acc, dt_s, evaluate):
        new_pos = self._scratch['pos']
        new_vel = self._scratch['vel']
        new_acc = self._scratch['acc']
        half_dt2 = 0.5 * dt_s * dt_s

        def _drift(start, end):
            new_pos[start:end] = pos[start:end] + vel[start:end] * dt_s + acc[start:end] * half_dt2

        self.pool.run(_drift, len(pos))
        self.phase = TickPhase.POSITION_ADVANCED

        evaluate(new_pos, new_acc)
        self.phase = TickPhase.ACCELERATION_RECOMPUTED

        def _kick(start, end):
            new_vel[start:end] = vel[start:end] + 0.5 * (acc[start:end] + new_acc[start:end]) * dt_s

        self.pool.run(_kick, len(pos))
        self.phase = TickPhase.VELOCITY_ADVANCED
        return new_pos, new_vel, new_acc


class RK4Integrator(Integrator):
    """
    Classical fourth-order Runge-Kutta on the state (x, v).

    k1 = (v0,            a(x0))
    k2 = (v0 + k1v dt/2, a(x0 + k1x dt/2))
    k3 = (v0 + k2v dt/2, a(x0 + k2x dt/2))
    k4 = (v0 + k3v dt,   a(x0 + k3x dt))
    (x, v) += dt/6 (k1 + 2 k2 + 2 k3 + k4)

    Three extra force evaluations per tick, each run through the same
    worker pool as the stage updates.
    """

    method = IntegrationMethod.RK4
    _scratch_names = ('pos', 'vel', 'stage_pos', 'k2x', 'k3x', 'k4x', 'k2v', 'k3v', 'k4v')

    def _stage(self, x0, v0, kx, kv, h, stage_pos, stage_vel, n):
        """stage_pos = x0 + kx h; stage_vel = v0 + kv h"""

        def _batch(start, end):
            stage_pos[start:end] = x0[start:end] + kx[start:end] * h
            stage_vel[start:end] = v0[start:end] + kv[start:end] * h

        self.pool.run(_batch, n)

    def _advance(self, pos, vel, acc, dt_s, evaluate):
        s = self._scratch
        n = len(pos)
        half = 0.5 * dt_s
        stage_pos = s['stage_pos']

        # k1 = (v0, acc); k2
        self._stage(pos, vel, vel, acc, half, stage_pos, s['k2x'], n)
        evaluate(stage_pos, s['k2v'])

        # k3
        self._stage(pos, vel, s['k2x'], s['k2v'], half, stage_pos, s['k3x'], n)
        evaluate(stage_pos, s['k3v'])

        # k4
        self._stage(pos, vel, s['k3x'], s['k3v'], dt_s, stage_pos, s['k4x'], n)
        evaluate(stage_pos, s['k4v'])
        self.phase = TickPhase.ACCELERATION_RECOMPUTED

        new_pos = s['pos']
        new_vel = s['vel']
        sixth = dt_s / 6.0
        k2x, k3x, k4x = s['k2x'], s['k3x'], s['k4x']
        k2v, k3v, k4v = s['k2v'], s['k3v'], s['k4v']

        def _combine(start, end):
            sl = slice(start, end)
            new_pos[sl] = pos[sl] + sixth * (vel[sl] + 2.0 * k2x[sl] + 2.0 * k3x[sl] + k4x[sl])
            new_vel[sl] = vel[sl] + sixth * (acc[sl] + 2.0 * k2v[sl] + 2.0 * k3v[sl] + k4v[sl])

        self.pool.run(_combine, n)
        self.phase = TickPhase.VELOCITY_ADVANCED
        return new_pos, new_vel, acc


_INTEGRATORS = {
    IntegrationMethod.EULER: EulerIntegrator,
    IntegrationMethod.VELOCITY_VERLET: VelocityVerletIntegrator,
    IntegrationMethod.RK4: RK4Integrator,
}


def create_integrator(method: IntegrationMethod, pool: Optional[WorkerPool] = None) -> Integrator:
    try:
        return _INTEGRATORS[method](pool=pool)
    except KeyError:
        raise ValueError(f"Unknown integration method: {method!r}") from None
