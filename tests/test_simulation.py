"""
Tests for the simulation facade: configure, step, query, diagnostics, previews.
"""

import unittest
import warnings
import numpy as np
from gravsim.bodies import Body
from gravsim.constants import ForceMethod, IntegrationMethod
from gravsim.diagnostics import EnergyDriftWarning
from gravsim.simulation import NBodySimulation
from gravsim.vector3d import Vector3D


def three_bodies():
    return [
        Body([0.0, 0.0, 0.0], [0.0, 0.0, 0.0], 1.0, body_id=1),
        Body([1.0, 0.0, 0.0], [0.0, 1.0, 0.0], 1e-3, body_id=2),
        Body([0.0, 2.5, 0.0], [-0.6, 0.0, 0.0], 1e-3, body_id=3),
    ]


def make_sim(**options):
    defaults = dict(gravitational_constant=1.0, softening=1e-3, use_parallel=False)
    defaults.update(options)
    return NBodySimulation(**defaults)


class TestStep(unittest.TestCase):

    def test_empty_body_set_is_noop(self):
        sim = make_sim()
        bodies = []

        self.assertIs(sim.step(bodies), bodies)
        self.assertEqual(sim.tick_count, 0)
        self.assertIs(sim.step(), sim.store)

    def test_step_writes_back_to_bodies(self):
        sim = make_sim()
        bodies = three_bodies()
        start = bodies[1].pos

        result = sim.step(bodies, base_dt=0.01)

        self.assertIs(result, bodies)
        self.assertNotEqual(bodies[1].pos, start)
        self.assertEqual(bodies[1].pos, sim.store.position(1))
        self.assertEqual(bodies[1].acc, sim.store.acceleration(1))
        self.assertAlmostEqual(sim.store.time, 0.01)

    def test_step_from_provider(self):
        class Provider:
            def __init__(self):
                self.bodies = three_bodies()

            def get_bodies(self):
                return self.bodies

        provider = Provider()
        sim = make_sim()
        sim.step(provider, base_dt=0.01)

        self.assertEqual(provider.bodies[2].pos, sim.store.position(2))

    def test_default_base_timestep(self):
        sim = make_sim(base_timestep=0.02, time_speed=3.0)
        sim.load_bodies(three_bodies())
        sim.step()

        self.assertAlmostEqual(sim.store.time, 0.06)
        self.assertAlmostEqual(sim.get_stats().current_timestep, 0.06)

    def test_adaptive_timestep_within_bounds(self):
        sim = make_sim(use_adaptive_timestep=True, min_timestep=1e-4, max_timestep=0.05)
        sim.load_bodies(three_bodies())
        for _ in range(5):
            sim.step(base_dt=1.0)
            dt = sim.get_stats().current_timestep
            self.assertGreaterEqual(dt, 1e-4)
            self.assertLessEqual(dt, 0.05)

    def test_non_finite_base_dt_rejected(self):
        sim = make_sim()
        sim.load_bodies(three_bodies())
        with self.assertRaises(ValueError):
            sim.step(base_dt=float('nan'))

    def test_coincident_bodies_stay_finite(self):
        sim = make_sim(force_method='barnes_hut')
        sim.load_bodies([
            Body([1.0, 1.0, 1.0], [0.0, 0.0, 0.0], 1.0, body_id=1),
            Body([1.0, 1.0, 1.0], [0.0, 0.0, 0.0], 1.0, body_id=2),
            Body([-3.0, 0.0, 0.0], [0.0, 0.0, 0.0], 1.0, body_id=3),
        ])
        for _ in range(3):
            sim.step(base_dt=0.01)

        self.assertTrue(np.all(np.isfinite(sim.store.positions)))
        self.assertTrue(np.all(np.isfinite(sim.store.accelerations)))

    def test_all_methods_run(self):
        for force in ForceMethod:
            for integration in IntegrationMethod:
                with self.subTest(force=force, integration=integration):
                    sim = make_sim(force_method=force, integration_method=integration)
                    sim.load_bodies(three_bodies())
                    sim.step(base_dt=0.01)
                    self.assertEqual(sim.tick_count, 1)

    def test_parallel_matches_sequential(self):
        rng = np.random.default_rng(4)
        bodies = [Body(rng.uniform(-1, 1, 3), rng.normal(size=3) * 0.1, 1.0, body_id=i) for i in range(64)]

        results = []
        for use_parallel in [False, True]:
            with make_sim(use_parallel=use_parallel, batch_size=8, max_workers=4) as sim:
                sim.load_bodies(bodies)
                for _ in range(3):
                    sim.step(base_dt=0.01)
                results.append(sim.store.get_positions())

        np.testing.assert_array_equal(results[0], results[1])


class TestConfigure(unittest.TestCase):

    def test_configure_is_idempotent(self):
        sim = make_sim(theta=0.7)
        first = sim.configure(gravitational_constant=1.0, theta=0.7)
        second = sim.configure(gravitational_constant=1.0, theta=0.7)

        self.assertEqual(first, second)
        self.assertEqual(sim.config.theta, 0.7)

    def test_unspecified_options_return_to_defaults(self):
        sim = make_sim(theta=0.7)
        sim.configure(gravitational_constant=1.0)
        self.assertEqual(sim.config.theta, 0.5)

    def test_invalid_configuration_keeps_previous(self):
        sim = make_sim(theta=0.7)
        with self.assertRaises(ValueError):
            sim.configure(theta=5.0)
        self.assertEqual(sim.config.theta, 0.7)

    def test_switching_force_method(self):
        sim = make_sim(force_method='brute_force')
        sim.load_bodies(three_bodies())
        sim.configure(gravitational_constant=1.0, force_method='barnes_hut')
        sim.step(base_dt=0.01)

        self.assertEqual(sim.get_stats().force_method, ForceMethod.BARNES_HUT)


class TestBodyAdministration(unittest.TestCase):

    def test_add_and_remove_between_ticks(self):
        sim = make_sim()
        sim.load_bodies(three_bodies())
        sim.step(base_dt=0.01)

        index = sim.add_body(Body([5.0, 0.0, 0.0], [0.0, 0.0, 0.0], 0.1, body_id=4))
        self.assertEqual(index, 3)
        sim.step(base_dt=0.01)
        self.assertEqual(sim.store.accelerations.shape, (4, 3))

        removed = sim.remove_body(0)
        self.assertEqual(removed.id, 1)
        sim.step(base_dt=0.01)
        self.assertEqual(sim.store.body_count(), 3)

    def test_shift_origin_preserves_relative_motion(self):
        shifted = make_sim(force_method='brute_force')
        plain = make_sim(force_method='brute_force')
        shifted.load_bodies(three_bodies())
        plain.load_bodies(three_bodies())

        offset = np.array([100.0, -50.0, 25.0])
        shifted.shift_origin(offset)
        for _ in range(10):
            shifted.step(base_dt=0.01)
            plain.step(base_dt=0.01)

        np.testing.assert_allclose(shifted.store.positions + offset, plain.store.positions, atol=1e-10)


class TestRenderSink(unittest.TestCase):

    def test_sink_receives_positions_each_tick(self):
        class Sink:
            def __init__(self):
                self.frames = []

            def update_positions(self, positions):
                self.frames.append(positions)

        sink = Sink()
        sim = NBodySimulation(bodies=three_bodies(), render_sink=sink,
                              gravitational_constant=1.0, use_parallel=False)
        sim.step(base_dt=0.01)
        sim.step(base_dt=0.01)

        self.assertEqual(len(sink.frames), 2)
        np.testing.assert_array_equal(sink.frames[-1], sim.store.positions)

        # The sink gets a copy it may keep
        sink.frames[-1][0, 0] = 42.0
        self.assertNotEqual(sim.store.positions[0, 0], 42.0)

    def test_callable_sink(self):
        frames = []
        sim = NBodySimulation(bodies=three_bodies(), render_sink=frames.append,
                              gravitational_constant=1.0, use_parallel=False)
        sim.step(base_dt=0.01)
        self.assertEqual(frames[0].shape, (3, 3))


class TestQueryAcceleration(unittest.TestCase):

    def test_point_query(self):
        sim = make_sim(force_method='brute_force', softening=1e-9)
        sim.load_bodies([Body([2.0, 0.0, 0.0], [0.0, 0.0, 0.0], 8.0, body_id=1)])

        acc = sim.query_acceleration(Vector3D(0.0, 0.0, 0.0))

        self.assertIsInstance(acc, Vector3D)
        self.assertAlmostEqual(acc.x, 2.0, places=9)
        self.assertAlmostEqual(acc.y, 0.0)

    def test_exclude_body(self):
        sim = make_sim(force_method='brute_force')
        bodies = three_bodies()
        sim.load_bodies(bodies)
        sim.step(base_dt=0.01)

        point = sim.store.position(1)
        by_index = sim.query_acceleration(point, exclude_body=1)
        by_body = sim.query_acceleration(point, exclude_body=bodies[1])
        self.assertEqual(by_index, by_body)

        # Same sum the tick used for body 1's acceleration at these positions
        expected = sim.force_evaluator.acceleration_at(
            point.to_array(), exclude=1, positions_m=sim.store.positions, masses_kg=sim.store.masses
        )
        np.testing.assert_array_equal(by_index.to_array(), expected)

    def test_exclude_body_without_explicit_id(self):
        """Bodies built without ids are still told apart when excluded"""
        sim = make_sim(force_method='brute_force', softening=1e-9)
        bodies = [
            Body([0.0, 0.0, 0.0], [0.0, 0.0, 0.0], 1.0),
            Body([1.0, 0.0, 0.0], [0.0, 0.0, 0.0], 1.0),
        ]
        sim.load_bodies(bodies)

        # Only the body at x=0 remains, pulling toward -x
        acc = sim.query_acceleration([0.5, 0.0, 0.0], exclude_body=bodies[1])
        self.assertAlmostEqual(acc.x, -4.0, places=6)

        acc = sim.query_acceleration([0.5, 0.0, 0.0], exclude_body=bodies[0])
        self.assertAlmostEqual(acc.x, 4.0, places=6)

    def test_tree_query_after_step_matches_direct(self):
        """The tree from the last evaluation is stale after commit; queries use committed positions"""
        tree_sim = make_sim(force_method='barnes_hut', theta=0.01, softening=1e-9)
        direct_sim = make_sim(force_method='brute_force', softening=1e-9)
        tree_sim.load_bodies(three_bodies())
        direct_sim.load_bodies(three_bodies())
        tree_sim.step(base_dt=0.01)
        direct_sim.step(base_dt=0.01)

        point = [0.3, 0.4, 0.1]
        np.testing.assert_allclose(tree_sim.query_acceleration(point).to_array(),
                                   direct_sim.query_acceleration(point).to_array(), rtol=1e-6)

    def test_query_on_empty_set(self):
        self.assertEqual(make_sim().query_acceleration([1.0, 2.0, 3.0]), Vector3D.zero())


class TestDiagnostics(unittest.TestCase):

    def test_energy_drift_warning(self):
        sim = make_sim(integration_method='euler', energy_check_interval=1, energy_drift_tolerance=1e-12)
        sim.load_bodies(three_bodies())

        with self.assertWarns(EnergyDriftWarning):
            sim.step(base_dt=0.1)
        self.assertGreater(sim.energy_drift(), 1e-12)

    def test_reload_takes_a_new_energy_baseline(self):
        """Loading another system with the same ids must not report drift against the old one"""
        sim = make_sim(force_method='brute_force', energy_check_interval=1, energy_drift_tolerance=1e-3)
        sim.load_bodies([
            Body([0.0, 0.0, 0.0], [0.0, 0.0, 0.0], 1.0, body_id=1),
            Body([1.0, 0.0, 0.0], [0.0, 1.0, 0.0], 1e-3, body_id=2),
        ])
        for _ in range(5):
            sim.step(base_dt=1e-3)

        sim.load_bodies([
            Body([0.0, 0.0, 0.0], [0.0, 0.0, 0.0], 2.0, body_id=1),
            Body([3.0, 0.0, 0.0], [0.0, np.sqrt(2.0 / 3.0), 0.0], 1e-3, body_id=2),
        ])
        with warnings.catch_warnings():
            warnings.simplefilter('error', EnergyDriftWarning)
            for _ in range(5):
                sim.step(base_dt=1e-3)

        self.assertLess(sim.energy_drift(), 1e-3)

    def test_step_with_new_default_id_bodies_resets_baseline(self):
        sim = make_sim(force_method='brute_force', energy_check_interval=1, energy_drift_tolerance=1e-3)
        sim.step([Body([0.0, 0.0, 0.0], [0.0, 0.0, 0.0], 1.0),
                  Body([1.0, 0.0, 0.0], [0.0, 1.0, 0.0], 1e-3)], base_dt=1e-3)

        with warnings.catch_warnings():
            warnings.simplefilter('error', EnergyDriftWarning)
            sim.step([Body([0.0, 0.0, 0.0], [0.0, 0.0, 0.0], 2.0),
                      Body([3.0, 0.0, 0.0], [0.0, np.sqrt(2.0 / 3.0), 0.0], 1e-3)], base_dt=1e-3)

        self.assertLess(sim.energy_drift(), 1e-3)

    def test_stats(self):
        sim = make_sim(integration_method='velocity_verlet', theta=0.4)
        sim.load_bodies(three_bodies())
        for _ in range(3):
            sim.step(base_dt=0.01)

        stats = sim.get_stats()
        self.assertEqual(stats.body_count, 3)
        self.assertEqual(stats.tick_count, 3)
        self.assertEqual(stats.integration_method, IntegrationMethod.VELOCITY_VERLET)
        self.assertEqual(stats.theta, 0.4)
        self.assertFalse(stats.use_parallel)
        # One evaluation per tick plus Verlet's recompute
        self.assertEqual(stats.force_evaluations, 6)
        self.assertAlmostEqual(stats.time_s, 0.03)

    def test_total_energy_is_negative_for_bound_system(self):
        sim = make_sim()
        sim.load_bodies(three_bodies())
        self.assertLess(sim.total_energy(), 0.0)


class TestMultiTick(unittest.TestCase):

    def test_evolve_snapshots(self):
        sim = make_sim()
        sim.load_bodies(three_bodies())

        snapshots = sim.evolve(10, base_dt=0.01, save_interval=5, show_progress=False)

        self.assertEqual(len(snapshots), 3)
        self.assertEqual(snapshots[0]['time_s'], 0.0)
        self.assertAlmostEqual(snapshots[-1]['time_s'], 0.1)
        self.assertEqual(snapshots[-1]['positions'].shape, (3, 3))

    def test_predict_trajectories_leaves_state_untouched(self):
        sim = make_sim(use_adaptive_timestep=True)
        sim.load_bodies(three_bodies())
        before = sim.store.get_positions()

        paths = sim.predict_trajectories(20, dt=0.01)

        self.assertEqual(paths.shape, (3, 20, 3))
        np.testing.assert_array_equal(sim.store.positions, before)
        self.assertEqual(sim.tick_count, 0)

        # The preview follows the same dynamics as real ticks at the same fixed step
        real = make_sim()
        real.load_bodies(three_bodies())
        for _ in range(20):
            real.step(base_dt=0.01)
        np.testing.assert_allclose(paths[:, -1, :], real.store.positions, rtol=1e-12, atol=1e-14)

    def test_predict_in_reference_frame(self):
        sim = make_sim()
        sim.load_bodies(three_bodies())

        paths = sim.predict_trajectories(10, dt=0.05, reference_body=0)

        start = sim.store.positions[0]
        for step in range(10):
            np.testing.assert_allclose(paths[0, step], start, atol=1e-14)


if __name__ == '__main__':
    unittest.main()
