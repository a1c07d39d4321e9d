"""
Tests for the kick-drift integrator.
"""

import numpy as np
import pytest

from octree_gravity.core.errors import ConstructionError, PreconditionError
from octree_gravity.integration import KickDriftIntegrator, suggest_timestep


def setup_buffers(context, positions, velocities, force):
    n = len(positions)
    return (
        context.upload("positions", positions),
        context.upload("velocities", velocities),
        context.upload("force", force),
        context.allocate("positions_out", (n, 4)),
        context.allocate("velocities_out", (n, 4)),
    )


class TestKickDrift:
    """Semi-implicit Euler update."""

    def test_kick_then_drift(self, context):
        p = np.array([[0.0, 0.0, 0.0, 1.0]], dtype=np.float32)
        v = np.array([[0.1, 0.0, 0.0, 0.0]], dtype=np.float32)
        f = np.array([[0.5, 0.0, -0.5]], dtype=np.float32)
        buffers = setup_buffers(context, p, v, f)
        integrator = KickDriftIntegrator(context, 1, dt=0.1, damping=0.0, max_speed=10.0, max_accel=10.0)

        integrator.run(*buffers)

        new_v = buffers[4].host()
        new_p = buffers[3].host()
        np.testing.assert_allclose(new_v[0, :3], [0.15, 0.0, -0.05], rtol=1e-6)
        # Drift uses the kicked velocity
        np.testing.assert_allclose(new_p[0, :3], [0.015, 0.0, -0.005], rtol=1e-5)

    def test_damping(self, context):
        p = np.array([[0.0, 0.0, 0.0, 1.0]], dtype=np.float32)
        v = np.array([[1.0, 0.0, 0.0, 0.0]], dtype=np.float32)
        f = np.zeros((1, 3), dtype=np.float32)
        buffers = setup_buffers(context, p, v, f)
        KickDriftIntegrator(context, 1, dt=0.1, damping=0.25, max_speed=10.0).run(*buffers)
        np.testing.assert_allclose(buffers[4].host()[0, 0], 0.75, rtol=1e-6)

    def test_speed_clamp(self, context):
        p = np.array([[0.0, 0.0, 0.0, 1.0]], dtype=np.float32)
        v = np.array([[3.0, 4.0, 0.0, 0.0]], dtype=np.float32)
        f = np.zeros((1, 3), dtype=np.float32)
        buffers = setup_buffers(context, p, v, f)
        KickDriftIntegrator(context, 1, dt=0.1, max_speed=1.0).run(*buffers)
        new_v = buffers[4].host()[0, :3]
        assert np.linalg.norm(new_v) == pytest.approx(1.0, rel=1e-5)
        np.testing.assert_allclose(new_v / np.linalg.norm(new_v), [0.6, 0.8, 0.0], rtol=1e-5)

    def test_accel_clamp(self, context):
        p = np.array([[0.0, 0.0, 0.0, 1.0]], dtype=np.float32)
        v = np.zeros((1, 4), dtype=np.float32)
        f = np.array([[0.0, 100.0, 0.0]], dtype=np.float32)
        buffers = setup_buffers(context, p, v, f)
        KickDriftIntegrator(context, 1, dt=0.5, max_speed=100.0, max_accel=2.0).run(*buffers)
        np.testing.assert_allclose(buffers[4].host()[0, :3], [0.0, 1.0, 0.0], rtol=1e-5)

    def test_mass_and_aux_preserved(self, context, rng):
        n = 20
        p = np.ones((n, 4), dtype=np.float32)
        p[:, :3] = rng.normal(size=(n, 3))
        p[:, 3] = rng.uniform(0.1, 2.0, size=n)
        v = np.zeros((n, 4), dtype=np.float32)
        v[:, 3] = rng.uniform(size=n)
        f = rng.normal(size=(n, 3)).astype(np.float32)
        buffers = setup_buffers(context, p, v, f)
        KickDriftIntegrator(context, n).run(*buffers)
        np.testing.assert_array_equal(buffers[3].host()[:, 3], p[:, 3])
        np.testing.assert_array_equal(buffers[4].host()[:, 3], v[:, 3])

    def test_invalid_particles_pass_through(self, context):
        p = np.array([
            [0.0, 0.0, 0.0, 1.0],
            [np.nan, 1.0, 1.0, 1.0],
            [1.0, 1.0, 1.0, 0.0],
            [2.0, 2.0, 2.0, 1.0],
        ], dtype=np.float32)
        v = np.full((4, 4), 0.5, dtype=np.float32)
        f = np.array([[1.0, 0.0, 0.0], [1.0, 0.0, 0.0], [1.0, 0.0, 0.0], [np.nan, 0.0, 0.0]], dtype=np.float32)
        buffers = setup_buffers(context, p, v, f)
        integrator = KickDriftIntegrator(context, 4, dt=0.1)
        integrator.run(*buffers)

        new_p = buffers[3].host()
        new_v = buffers[4].host()
        assert integrator.passed_through == 3
        np.testing.assert_array_equal(new_p[1:], p[1:])
        np.testing.assert_array_equal(new_v[1:], v[1:])
        assert new_p[0, 0] != 0.0

    def test_output_aliasing_rejected(self, context):
        p = np.zeros((2, 4), dtype=np.float32)
        positions = context.upload("positions", p)
        velocities = context.upload("velocities", p)
        force = context.allocate("force", (2, 3))
        velocities_out = context.allocate("velocities_out", (2, 4))
        integrator = KickDriftIntegrator(context, 2)
        with pytest.raises(PreconditionError, match="both read and written"):
            integrator.run(positions, velocities, force, positions, velocities_out)

    def test_missing_force(self, context):
        p = np.zeros((2, 4), dtype=np.float32)
        buffers = list(setup_buffers(context, p, p, np.zeros((2, 3), dtype=np.float32)))
        buffers[2] = None
        with pytest.raises(PreconditionError, match="force"):
            KickDriftIntegrator(context, 2).run(*buffers)

    def test_wrong_shape(self, context):
        p = np.zeros((3, 4), dtype=np.float32)
        buffers = setup_buffers(context, p, p, np.zeros((3, 3), dtype=np.float32))
        with pytest.raises(PreconditionError, match="expected \\(2, 4\\)"):
            KickDriftIntegrator(context, 2).run(*buffers)


class TestIntegratorConstruction:
    """Parameter validation."""

    @pytest.mark.parametrize("kwargs, match", [
        ({"dt": 0.0}, "dt"),
        ({"damping": 1.5}, "damping"),
        ({"max_speed": 0.0}, "max_speed"),
        ({"max_accel": -1.0}, "max_accel"),
    ])
    def test_invalid_parameters(self, context, kwargs, match):
        with pytest.raises(ConstructionError, match=match):
            KickDriftIntegrator(context, 4, **kwargs)

    def test_suggest_timestep(self):
        dt = suggest_timestep(softening=0.2, max_accel=1.0, max_speed=2.0)
        assert 0 < dt <= 0.25 * 0.2 / 2.0 + 1e-12
        with pytest.raises(ValueError, match="softening"):
            suggest_timestep(softening=0.0, max_accel=1.0, max_speed=1.0)
