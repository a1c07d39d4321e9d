"""
Tests for conserved-quantity diagnostics.
"""

import numpy as np
import pytest

from octree_gravity.core.diagnostics import GravityDiagnostics


def two_body():
    positions = np.array([[-1.0, 0.0, 0.0, 1.0], [1.0, 0.0, 0.0, 3.0]], dtype=np.float32)
    velocities = np.array([[0.0, 1.0, 0.0, 0.0], [0.0, -1.0, 0.0, 0.0]], dtype=np.float32)
    return positions, velocities


class TestGravityDiagnostics:
    """Global quantities and history."""

    def test_compute(self):
        positions, velocities = two_body()
        record = GravityDiagnostics().compute(positions, velocities)
        assert record["total_mass"] == pytest.approx(4.0)
        np.testing.assert_allclose(record["centre_of_mass"], [0.5, 0.0, 0.0])
        np.testing.assert_allclose(record["linear_momentum"], [0.0, -2.0, 0.0])
        np.testing.assert_allclose(record["angular_momentum"], [0.0, 0.0, -4.0])
        assert record["kinetic_energy"] == pytest.approx(2.0)
        assert record["n_valid"] == 2
        assert record["n_invalid"] == 0

    def test_invalid_particles_ignored(self):
        positions, velocities = two_body()
        positions = np.vstack([positions, [[np.nan, 0, 0, 5.0], [0, 0, 0, 0.0]]])
        velocities = np.vstack([velocities, np.zeros((2, 4))])
        record = GravityDiagnostics().compute(positions, velocities)
        assert record["total_mass"] == pytest.approx(4.0)
        assert record["n_invalid"] == 2

    def test_history_and_drift(self):
        diagnostics = GravityDiagnostics()
        assert diagnostics.drift("total_mass") is None
        positions, velocities = two_body()
        for step in range(3):
            shifted = positions.copy()
            shifted[:, 0] += 0.1 * step
            diagnostics.append_to_history(step, diagnostics.compute(shifted, velocities))

        assert len(diagnostics.history) == 3
        assert diagnostics.history[-1]["step"] == 2
        assert diagnostics.get_time_series("centre_of_mass").shape == (3, 3)
        assert diagnostics.drift("centre_of_mass") == pytest.approx(0.2, rel=1e-5)
        assert diagnostics.max_step_change("centre_of_mass") == pytest.approx(0.1, rel=1e-5)
        assert diagnostics.drift("total_mass") == pytest.approx(0.0)

        diagnostics.clear()
        assert diagnostics.history == []
        assert diagnostics.max_step_change("total_mass") is None
