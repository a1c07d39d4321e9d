"""
CUDA backend parity with the CPU kernels. Skipped without CuPy and a device.
"""

import numpy as np
import pytest

cp = pytest.importorskip("cupy")

from octree_gravity.gpu.context import HAS_CUDA, ComputeContext  # noqa: E402
from octree_gravity.multipole.aggregation import QuadrupoleAggregator  # noqa: E402
from octree_gravity.multipole.levels import WorldBounds, build_levels  # noqa: E402
from octree_gravity.multipole.pyramid import PyramidBuilder  # noqa: E402
from octree_gravity.multipole.traversal import QuadrupoleTraversal  # noqa: E402

pytestmark = pytest.mark.skipif(not HAS_CUDA, reason="no CUDA device")


def forces_on(backend, positions):
    with ComputeContext(backend=backend) as ctx:
        bounds = WorldBounds((-4, -4, -4), (4, 4, 4))
        levels = build_levels(16, 4)
        n = len(positions)
        aggregator = QuadrupoleAggregator(ctx, n, levels[0], bounds)
        builder = PyramidBuilder(ctx, levels, quadrupole=True)
        traversal = QuadrupoleTraversal(ctx, n, levels, bounds, gravity_strength=1.0, softening=0.1)
        buffer = ctx.upload("positions", positions)
        return traversal.run(buffer, builder.run(aggregator.run(buffer))).host()


class TestCudaBackend:
    """Same results on both backends."""

    def test_context_uses_cupy(self):
        with ComputeContext(backend="cuda") as ctx:
            assert ctx.xp is cp
            buffer = ctx.upload("x", np.arange(4))
            np.testing.assert_array_equal(buffer.host(), np.arange(4))

    def test_traversal_matches_cpu(self):
        rng = np.random.default_rng(5)
        p = np.zeros((150, 4), dtype=np.float32)
        p[:, :3] = rng.uniform(-3, 3, size=(150, 3))
        p[:, 3] = rng.uniform(0.5, 1.5, size=150)
        np.testing.assert_allclose(forces_on("cuda", p), forces_on("cpu", p), rtol=1e-4, atol=1e-5)
