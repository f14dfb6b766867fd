"""
Main Simulation Runner
Configure / Step / QueryAcceleration over a Body Store
"""

import dataclasses
import math
from typing import Callable, Dict, List, Optional, Sequence, Union

import numpy as np
from tqdm import tqdm

from .bodies import Body, BodySource, BodyStore, RenderPositionSink, resolve_bodies
from .config import SimulationConfig
from .constants import ForceMethod, IntegrationMethod
from .diagnostics import EnergyMonitor, total_energy
from .forces import ForceEvaluator, create_force_evaluator
from .integrator import Integrator, create_integrator
from .parallel import WorkerPool
from .timestep import TimestepController
from .vector3d import Vector3D


@dataclasses.dataclass
class SimulationStats:
    body_count: int
    force_method: ForceMethod
    integration_method: IntegrationMethod
    current_timestep: Optional[float]
    use_parallel: bool
    theta: float
    tick_count: int
    time_s: float
    force_evaluations: int
    energy_drift: Optional[float]


class NBodySimulation:
    """
    Gravitational N-body core.

    One tick runs these phases strictly in order, each joined before the next:
        octree build -> force evaluation -> timestep decision -> integration
    then commits to the Body Store and notifies the render sink.

    Usage:
        sim = NBodySimulation(force_method='barnes_hut', theta=0.5)
        sim.load_bodies(bodies)
        sim.step(base_dt=0.01)
    """

    def __init__(self, config: Optional[SimulationConfig] = None,
                 bodies: Optional[BodySource] = None,
                 render_sink: Optional[Union[RenderPositionSink, Callable[[np.ndarray], None]]] = None,
                 **options):
        self.config: Optional[SimulationConfig] = None
        self.store = BodyStore()
        self.render_sink = render_sink
        self.tick_count = 0

        self.pool: Optional[WorkerPool] = None
        self.force_evaluator: Optional[ForceEvaluator] = None
        self.integrator: Optional[Integrator] = None
        self.timestep: Optional[TimestepController] = None
        self.energy_monitor: Optional[EnergyMonitor] = None
        self._accelerations = np.zeros((0, 3), dtype=np.float64)

        self.configure(config, **options)
        if bodies is not None:
            self.load_bodies(bodies)

    # Configuration
    def configure(self, config: Optional[SimulationConfig] = None, **options) -> SimulationConfig:
        """
        Apply a configuration; options not given take their defaults.

        Invalid values raise ValueError before anything changes.
        """
        new_config = config if config is not None else SimulationConfig()
        if options:
            new_config = new_config.replace(**options)

        if self.pool is not None:
            self.pool.close()

        self.config = new_config
        G = new_config.gravitational_constant
        self.pool = WorkerPool(enabled=new_config.use_parallel, batch_size=new_config.batch_size,
                               max_workers=new_config.max_workers)
        self.force_evaluator = create_force_evaluator(
            new_config.force_method, theta=new_config.theta, softening_m=new_config.softening,
            G=G, pool=self.pool
        )
        self.integrator = create_integrator(new_config.integration_method, pool=self.pool)
        self.timestep = TimestepController(
            use_adaptive=new_config.use_adaptive_timestep,
            min_timestep_s=new_config.min_timestep,
            max_timestep_s=new_config.max_timestep,
            adaptive_factor=new_config.adaptive_factor,
            time_speed=new_config.time_speed,
        )
        self.energy_monitor = EnergyMonitor(
            softening_m=new_config.softening, G=G,
            interval=new_config.energy_check_interval,
            tolerance=new_config.energy_drift_tolerance,
        )
        if self.energy_monitor.enabled and self.store.body_count() > 0:
            self.energy_monitor.reset(self.store)

        print(f"[NBodySimulation] Configured: force={new_config.force_method.value}, "
              f"integrator={new_config.integration_method.value}, theta={new_config.theta}, "
              f"softening={new_config.softening}, "
              f"timestep={'adaptive' if new_config.use_adaptive_timestep else 'fixed'}, "
              f"parallel={new_config.use_parallel}")
        return new_config

    # Body set administration (between ticks only)
    def load_bodies(self, bodies: BodySource) -> BodyStore:
        """Replace the body set from a provider or a sequence of bodies."""
        self.store.rebuild(resolve_bodies(bodies))
        self._on_body_set_changed()
        print(f"[NBodySimulation] Loaded {self.store.body_count()} bodies")
        return self.store

    def _load(self, body_list: List[Body]) -> None:
        """Per-tick reload; the energy baseline survives while the ids stay the same."""
        previous_ids = self.store.ids
        self.store.rebuild(body_list)
        if not np.array_equal(previous_ids, self.store.ids):
            self._on_body_set_changed()

    def _on_body_set_changed(self) -> None:
        if self.energy_monitor is not None and self.energy_monitor.enabled and self.store.body_count() > 0:
            self.energy_monitor.reset(self.store)

    def add_body(self, body: Body) -> int:
        index = self.store.add_body(body)
        self._on_body_set_changed()
        return index

    def remove_body(self, index: int) -> Body:
        removed = self.store.remove_body(index)
        self._on_body_set_changed()
        return removed

    def shift_origin(self, offset) -> None:
        """Recentre the world at a tick boundary; relative dynamics are unchanged."""
        self.store.shift_origin(offset)

    # Tick
    def _evaluate(self, positions_m: np.ndarray, out: np.ndarray) -> np.ndarray:
        return self.force_evaluator.evaluate(positions_m, self.store.masses, out)

    def _acceleration_buffer(self, n: int) -> np.ndarray:
        if self._accelerations.shape[0] != n:
            self._accelerations = np.zeros((n, 3), dtype=np.float64)
        return self._accelerations

    def step(self, bodies: Optional[BodySource] = None,
             base_dt: Optional[float] = None) -> Union[BodyStore, Sequence[Body]]:
        """
        Advance every body by one tick.

        Args:
            bodies: optional provider or sequence of Body to load first;
                    those Body objects receive the updated state
            base_dt: base timestep in seconds (default: config.base_timestep)

        Returns:
            The updated bodies when given, otherwise the Body Store. An
            empty body set is a no-op and the input comes back unchanged.
        """
        body_list = None
        if bodies is not None:
            body_list = resolve_bodies(bodies)
            self._load(body_list)

        n = self.store.body_count()
        if n == 0:
            return bodies if bodies is not None else self.store

        base_dt_s = self.config.base_timestep if base_dt is None else float(base_dt)
        if not math.isfinite(base_dt_s):
            raise ValueError(f"base_dt must be finite, got {base_dt!r}")

        accelerations = self._acceleration_buffer(n)
        self._evaluate(self.store.positions, accelerations)
        dt_s = self.timestep.compute(accelerations, base_dt_s)
        self.integrator.step(self.store, accelerations, dt_s, self._evaluate)

        self.tick_count += 1
        self.energy_monitor.after_tick(self.store)
        self._notify_sink()

        if body_list is not None:
            self._write_back(body_list)
            return body_list
        return self.store

    def _write_back(self, body_list: List[Body]) -> None:
        for i, body in enumerate(body_list):
            body.pos = self.store.position(i)
            body.vel = self.store.velocity(i)
            body.acc = self.store.acceleration(i)

    def _notify_sink(self) -> None:
        if self.render_sink is None:
            return
        positions = self.store.get_positions()
        update = getattr(self.render_sink, 'update_positions', None)
        if callable(update):
            update(positions)
        else:
            self.render_sink(positions)

    # Queries
    def query_acceleration(self, point, exclude_body: Optional[Union[int, Body]] = None) -> Vector3D:
        """
        Gravitational acceleration at an arbitrary point.

        Reuses this tick's octree when it still matches the committed
        positions; otherwise a fresh one is built from them.

        Args:
            point: position (Vector3D or length-3 sequence)
            exclude_body: body index, or a Body matched by id, left out of the sum
        """
        if self.store.body_count() == 0:
            return Vector3D.zero()

        exclude = exclude_body
        if isinstance(exclude_body, Body):
            matches = np.nonzero(self.store.ids == exclude_body.id)[0]
            exclude = int(matches[0]) if len(matches) else None

        point_m = Vector3D.from_array(point).to_array()
        acc = self.force_evaluator.acceleration_at(
            point_m, exclude=exclude, positions_m=self.store.positions, masses_kg=self.store.masses
        )
        return Vector3D.from_array(acc)

    def total_energy(self) -> float:
        """Kinetic + potential energy (J) of the current state."""
        return total_energy(self.store, self.config.softening, self.config.gravitational_constant)

    def energy_drift(self) -> Optional[float]:
        return self.energy_monitor.last_drift

    def get_stats(self) -> SimulationStats:
        """Current simulation statistics."""
        return SimulationStats(
            body_count=self.store.body_count(),
            force_method=self.config.force_method,
            integration_method=self.config.integration_method,
            current_timestep=self.timestep.current_timestep_s,
            use_parallel=self.config.use_parallel,
            theta=self.config.theta,
            tick_count=self.tick_count,
            time_s=self.store.time,
            force_evaluations=self.force_evaluator.evaluation_count,
            energy_drift=self.energy_monitor.last_drift,
        )

    # Multi-tick helpers
    def evolve(self, n_steps: int, base_dt: Optional[float] = None, save_interval: int = 10,
               show_progress: bool = True) -> List[Dict]:
        """Run n_steps ticks, saving a snapshot every save_interval steps."""
        snapshots = [self._save_snapshot()]

        print(f"[NBodySimulation] Evolving {self.store.body_count()} bodies")
        print(f"  Integrator = {self.config.integration_method.value}")
        print(f"  Total steps = {n_steps}")
        print(f"  Save interval = {save_interval}")

        n_bodies = self.store.body_count()
        for step in tqdm(range(n_steps), disable=not show_progress,
                         mininterval=.5 if n_bodies > 1000 else (0.25 if n_bodies > 300 else 0.1),
                         desc="Integrating", unit="step"):
            self.step(base_dt=base_dt)

            if (step + 1) % save_interval == 0:
                snapshots.append(self._save_snapshot())

        print(f"[NBodySimulation] Evolution complete. Time = {self.store.time:.4e} s")
        return snapshots

    def _save_snapshot(self) -> Dict:
        return {
            'time_s': self.store.time,
            'timestep_s': self.timestep.current_timestep_s,
            'positions': self.store.get_positions(),
            'velocities': self.store.get_velocities(),
            'accelerations': self.store.get_accelerations(),
        }

    def predict_trajectories(self, n_steps: int, dt: Optional[float] = None,
                             reference_body: Optional[int] = None) -> np.ndarray:
        """
        Speculative orbit preview on a copy of the current state.

        Args:
            n_steps: number of preview ticks
            dt: fixed preview step (default: config.base_timestep)
            reference_body: index of a body whose frame the paths are drawn in;
                            that body stays at its starting position

        Returns:
            (N, n_steps, 3) positions after each preview tick
        """
        n = self.store.body_count()
        paths = np.zeros((n, n_steps, 3))
        if n == 0 or n_steps == 0:
            return paths

        preview = NBodySimulation(
            self.config.replace(use_adaptive_timestep=False, time_speed=1.0, energy_check_interval=0)
        )
        try:
            preview.store = self.store.copy()
            reference_start = preview.store.positions[reference_body].copy() if reference_body is not None else None

            for step in range(n_steps):
                preview.step(base_dt=dt)
                positions = preview.store.positions
                if reference_start is not None:
                    positions = positions - (positions[reference_body] - reference_start)
                paths[:, step, :] = positions
        finally:
            preview.close()

        return paths

    # Lifecycle
    def close(self) -> None:
        if self.pool is not None:
            self.pool.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __repr__(self):
        return (f"NBodySimulation(n={self.store.body_count()}, force={self.config.force_method.value}, "
                f"integrator={self.config.integration_method.value}, ticks={self.tick_count})")
