"""
Tests for the octree force traversal.

Validates:
- Acceptance criterion classification
- Zero field, self-force exclusion and invalid particles
- Newton's third law, linear scaling in G, softening and theta sensitivity
- Every mass counted once for any neighbourhood radius
- Quadrupole correction and the occupancy mask
- Construction and precondition errors
"""

import contextlib

import numpy as np
import pytest

from octree_gravity.core.errors import (
    ConstructionError,
    DegradedAccuracyWarning,
    PreconditionError,
)
from octree_gravity.gpu.context import Borrowed, ComputeContext
from octree_gravity.multipole.aggregation import Aggregator, QuadrupoleAggregator
from octree_gravity.multipole.levels import VoxelMoments, WorldBounds, build_levels
from octree_gravity.multipole.pyramid import PyramidBuilder
from octree_gravity.multipole.traversal import (
    FAR,
    NEAR,
    STRADDLE,
    QuadrupoleTraversal,
    Traversal,
    classify_cell,
    default_neighbourhood_radius,
    minimum_neighbourhood_radius,
)


def compute_forces(positions, theta=0.5, G=1.0, softening=0.1, base=16, num_levels=4,
                   quadrupole=False, radius=None, occupancy=False):
    """Run aggregation, pyramid and traversal once on a fresh CPU context."""
    p = np.asarray(positions, dtype=np.float32)
    n = p.shape[0]
    with ComputeContext(backend="cpu") as ctx:
        bounds = WorldBounds((-4, -4, -4), (4, 4, 4))
        levels = build_levels(base, num_levels)
        aggregator_cls = QuadrupoleAggregator if quadrupole else Aggregator
        traversal_cls = QuadrupoleTraversal if quadrupole else Traversal
        aggregator = aggregator_cls(ctx, n, levels[0], bounds)
        builder = PyramidBuilder(ctx, levels, quadrupole=quadrupole)
        traversal = traversal_cls(
            ctx, n, levels, bounds, theta=theta, gravity_strength=G, softening=softening,
            neighbourhood_radius=radius, use_occupancy_mask=occupancy,
        )
        buffer = ctx.upload("positions", p)
        pyramid = builder.run(aggregator.run(buffer))
        return traversal.run(buffer, pyramid).host()


def direct_forces(positions, G=1.0, softening=0.1):
    """O(N^2) softened reference, skipping invalid particles."""
    p = np.asarray(positions, dtype=np.float64)
    valid = np.all(np.isfinite(p), axis=1) & (p[:, 3] > 0)
    out = np.zeros((len(p), 3))
    for i in np.flatnonzero(valid):
        r = p[i, :3] - p[valid, :3]
        d2 = (r * r).sum(axis=1) + softening ** 2
        m = p[valid, 3]
        contrib = -G * m[:, None] * r / d2[:, None] ** 1.5
        contrib[np.flatnonzero(valid) == i] = 0.0
        out[i] = contrib.sum(axis=0)
    return out


def relative_errors(approx, exact):
    norm = np.linalg.norm(exact, axis=1)
    return np.linalg.norm(approx - exact, axis=1) / np.maximum(norm, 1e-12)


def rod_with_probe(rng, n=100):
    """An elongated cluster in one coarse octant and a light probe far away."""
    p = np.zeros((n + 1, 4), dtype=np.float32)
    p[:n, 0] = rng.uniform(0.2, 3.8, size=n)
    p[:n, 1:3] = rng.uniform(0.2, 0.6, size=(n, 2))
    p[:n, 3] = 0.01
    p[n] = [-3.0, -3.0, -3.0, 1e-3]
    return p


class TestClassification:
    """Acceptance criterion on a unit cell."""

    def test_far(self):
        assert classify_cell([10.0, 0.5, 0.5], [0, 0, 0], [1, 1, 1], 0.5) == FAR

    def test_near(self):
        assert classify_cell([0.5, 0.5, 0.5], [0, 0, 0], [1, 1, 1], 0.5) == NEAR

    def test_straddle(self):
        assert classify_cell([2.5, 0.5, 0.5], [0, 0, 0], [1, 1, 1], 0.5) == STRADDLE

    def test_boundary_is_far(self):
        # near * theta == size
        assert classify_cell([3.0, 0.5, 0.5], [0, 0, 0], [1, 1, 1], 0.5) == FAR

    def test_size_is_longest_edge(self):
        assert classify_cell([3.0, 0.5, 0.5], [0, 0, 0], [1, 1, 2], 0.5) != FAR

    def test_neighbourhood_radius(self):
        assert default_neighbourhood_radius(0.5) == 3
        assert default_neighbourhood_radius(1.0) == 2
        assert default_neighbourhood_radius(0.3) == 5
        assert minimum_neighbourhood_radius(0.5) == 2


class TestForceProperties:
    """Physical properties of the computed field."""

    def test_zero_moments_give_zero_force(self, context, bounds, small_levels):
        p = np.array([[0.0, 0.0, 0.0, 1.0], [1.0, 2.0, -1.0, 1.0]], dtype=np.float32)
        traversal = Traversal(context, 2, small_levels, bounds, gravity_strength=1.0)
        empty = [
            VoxelMoments(level, context.allocate(f"empty[{level.index}]", (level.num_cells, 4)))
            for level in small_levels
        ]
        force = traversal.run(context.upload("positions", p), empty).host()
        np.testing.assert_allclose(force, 0.0, atol=1e-5)

    def test_isolated_particle_feels_no_self_force(self):
        force = compute_forces([[0.3, -0.2, 0.1, 5.0]])
        np.testing.assert_allclose(force, 0.0, atol=1e-5)

    def test_newton_third_law(self):
        force = compute_forces([[-1.0, 0.0, 0.0, 1.0], [1.0, 0.0, 0.0, 1.0]], theta=0.5, G=1.0, softening=0.1)
        assert force[0, 0] > 0
        assert force[1, 0] < 0
        assert abs(force[0, 0]) == pytest.approx(abs(force[1, 0]), abs=1e-2)
        expected = 2.0 / (4.0 + 0.01) ** 1.5
        assert force[0, 0] == pytest.approx(expected, rel=1e-4)
        np.testing.assert_allclose(force[:, 1:], 0.0, atol=1e-6)

    def test_linear_in_gravity_strength(self):
        pair = [[-1.0, 0.5, 0.0, 1.0], [1.0, 0.0, 0.3, 2.0]]
        weak = compute_forces(pair, G=1.0)
        strong = compute_forces(pair, G=10.0)
        np.testing.assert_allclose(strong, 10.0 * weak, rtol=1e-4)

    def test_softening_reduces_close_force(self):
        pair = [[-0.1, 0.0, 0.0, 1.0], [0.1, 0.0, 0.0, 1.0]]
        hard = compute_forces(pair, softening=0.01)
        soft = compute_forces(pair, softening=0.5)
        assert np.linalg.norm(hard[0]) > np.linalg.norm(soft[0])

    def test_theta_changes_result(self, rng):
        p = rod_with_probe(rng)
        fine = compute_forces(p, theta=0.1)[-1]
        coarse = compute_forces(p, theta=1.0)[-1]
        assert np.all(np.isfinite(fine)) and np.all(np.isfinite(coarse))
        assert np.linalg.norm(fine) > 0 and np.linalg.norm(coarse) > 0
        assert np.linalg.norm(fine - coarse) > 1e-3 * np.linalg.norm(fine)

    def test_small_theta_matches_direct_sum(self, rng):
        p = rod_with_probe(rng)
        approx = compute_forces(p, theta=0.1)[-1]
        exact = direct_forces(p)[-1]
        np.testing.assert_allclose(approx, exact, rtol=1e-2)

    def test_deterministic(self, rng):
        p = np.zeros((64, 4), dtype=np.float32)
        p[:, :3] = rng.uniform(-3, 3, size=(64, 3))
        p[:, 3] = 1.0
        np.testing.assert_array_equal(compute_forces(p), compute_forces(p))


class TestMassCounting:
    """Every particle's mass reaches every other particle exactly once."""

    @pytest.fixture
    def spread(self, rng):
        p = np.zeros((200, 4), dtype=np.float32)
        p[:, :3] = rng.uniform(-3.0, 3.0, size=(200, 3))
        p[:, 3] = rng.uniform(0.5, 1.5, size=200)
        return p

    @pytest.mark.parametrize("radius", [2, 3, 6])
    def test_accurate_for_any_adequate_radius(self, spread, radius):
        approx = compute_forces(spread, theta=0.5, radius=radius)
        errors = relative_errors(approx, direct_forces(spread))
        assert np.median(errors) < 0.1

    def test_small_radius_degrades_but_stays_bounded(self, spread):
        with pytest.warns(DegradedAccuracyWarning, match="neighbourhood_radius"):
            approx = compute_forces(spread, theta=0.5, radius=1)
        errors = relative_errors(approx, direct_forces(spread))
        assert np.all(np.isfinite(approx))
        # Double counting or dropping a region would push errors towards 100%
        assert np.median(errors) < 0.3

    def test_distant_cluster_pull_matches_total_mass(self, rng):
        n = 60
        p = np.zeros((n + 1, 4), dtype=np.float32)
        p[:n, :3] = rng.normal(loc=2.5, scale=0.15, size=(n, 3))
        p[:n, 3] = 0.5
        p[n] = [-3.5, -3.5, -3.5, 1e-3]
        exact = direct_forces(p)[-1]
        for radius in (1, 2, 3):
            with _maybe_warns(radius):
                approx = compute_forces(p, radius=radius)[-1]
            np.testing.assert_allclose(approx, exact, rtol=2e-2)


def _maybe_warns(radius):
    if radius < minimum_neighbourhood_radius(0.5):
        return pytest.warns(DegradedAccuracyWarning)
    return contextlib.nullcontext()


class TestInvalidParticles:
    """Invalid and out-of-bounds particles."""

    def test_invalid_rows_get_zero_force_and_no_influence(self):
        pair = np.array([[-1.0, 0.0, 0.0, 1.0], [1.0, 0.0, 0.0, 1.0]], dtype=np.float32)
        polluted = np.vstack([
            pair,
            [[np.nan, 0.0, 0.0, 1.0], [0.5, 0.5, 0.5, 0.0], [0.2, 0.2, 0.2, -3.0]],
        ]).astype(np.float32)
        clean = compute_forces(pair)
        dirty = compute_forces(polluted)
        np.testing.assert_allclose(dirty[:2], clean, rtol=1e-6)
        np.testing.assert_array_equal(dirty[2:], 0.0)

    def test_outside_particle_feels_but_does_not_pull(self):
        pair = np.array([[-1.0, 0.0, 0.0, 1.0], [1.0, 0.0, 0.0, 1.0]], dtype=np.float32)
        with_outside = np.vstack([pair, [[6.0, 0.0, 0.0, 100.0]]]).astype(np.float32)
        clean = compute_forces(pair)
        forces = compute_forces(with_outside)
        np.testing.assert_allclose(forces[:2], clean, rtol=1e-6)
        assert np.all(np.isfinite(forces[2]))
        assert forces[2, 0] < 0


class TestQuadrupole:
    """Second-order correction."""

    def test_quadrupole_improves_distant_rod(self, rng):
        p = rod_with_probe(rng)
        exact = direct_forces(p)[-1]
        mono = compute_forces(p, theta=1.0)[-1]
        quad = compute_forces(p, theta=1.0, quadrupole=True)[-1]
        assert np.linalg.norm(quad - exact) < np.linalg.norm(mono - exact)

    def test_quadrupole_close_to_monopole_for_compact_cluster(self, rng):
        n = 40
        p = np.zeros((n + 1, 4), dtype=np.float32)
        p[:n, :3] = rng.normal(loc=2.5, scale=0.1, size=(n, 3))
        p[:n, 3] = 1.0
        p[n] = [-3.5, -3.5, -3.5, 1e-3]
        mono = compute_forces(p)[-1]
        quad = compute_forces(p, quadrupole=True)[-1]
        np.testing.assert_allclose(quad, mono, rtol=1e-2)

    def test_occupancy_mask_does_not_change_result(self, rng):
        p = np.zeros((80, 4), dtype=np.float32)
        p[:, :3] = rng.uniform(-3, 3, size=(80, 3))
        p[:, 3] = 1.0
        plain = compute_forces(p, quadrupole=True)
        masked = compute_forces(p, quadrupole=True, occupancy=True)
        np.testing.assert_allclose(masked, plain, rtol=1e-6, atol=1e-7)


class TestTraversalErrors:
    """Construction and run-time contract."""

    def test_invalid_parameters(self, context, bounds, small_levels):
        with pytest.raises(ConstructionError, match="theta"):
            Traversal(context, 4, small_levels, bounds, theta=0.0)
        with pytest.raises(ConstructionError, match="softening"):
            Traversal(context, 4, small_levels, bounds, softening=-1.0)
        with pytest.raises(ConstructionError, match="neighbourhood_radius"):
            Traversal(context, 4, small_levels, bounds, neighbourhood_radius=0)
        with pytest.raises(ConstructionError, match="occupancy mask"):
            Traversal(context, 4, small_levels, bounds, use_occupancy_mask=True)

    def test_level_caps(self, context, bounds):
        with pytest.raises(ConstructionError, match="monopole pyramid"):
            Traversal(context, 4, build_levels(256, 9), bounds)
        with pytest.raises(ConstructionError, match="quadrupole pyramid"):
            QuadrupoleTraversal(context, 4, build_levels(32, 5), bounds)

    def test_small_radius_warns(self, context, bounds, small_levels):
        with pytest.warns(DegradedAccuracyWarning):
            Traversal(context, 4, small_levels, bounds, theta=0.25, neighbourhood_radius=3)

    def test_missing_moments(self, context, bounds, small_levels):
        traversal = Traversal(context, 1, small_levels, bounds)
        positions = context.upload("positions", np.array([[0, 0, 0, 1]], dtype=np.float32))
        with pytest.raises(PreconditionError, match="expected moments for 4 levels"):
            traversal.run(positions, None)
        aggregator = Aggregator(context, 1, small_levels[0], bounds)
        pyramid = PyramidBuilder(context, small_levels).run(aggregator.run(positions))
        pyramid[2] = None
        with pytest.raises(PreconditionError, match="missing required buffers"):
            traversal.run(positions, pyramid)

    def test_missing_positions(self, context, bounds, small_levels):
        traversal = Traversal(context, 1, small_levels, bounds)
        with pytest.raises(PreconditionError, match="positions"):
            traversal.run(None, [None] * 4)

    def test_borrowed_force_buffer(self, context, bounds, small_levels):
        target = context.allocate("shared.force", (2, 3))
        traversal = Traversal(context, 2, small_levels, bounds, gravity_strength=1.0, force=Borrowed(target))
        p = context.upload("positions", np.array([[-1, 0, 0, 1], [1, 0, 0, 1]], dtype=np.float32))
        aggregator = Aggregator(context, 2, small_levels[0], bounds)
        pyramid = PyramidBuilder(context, small_levels).run(aggregator.run(p))
        assert traversal.run(p, pyramid) is target
        traversal.dispose()
        assert not target.released
        assert target.host()[0, 0] > 0
