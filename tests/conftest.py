"""
Shared fixtures for the octree gravity tests.

Grids are kept small (16^3 base, 4 levels) so the Numba kernels compile and
run quickly on the CPU backend.
"""

import numpy as np
import pytest

from octree_gravity.gpu.context import ComputeContext
from octree_gravity.multipole.levels import WorldBounds, build_levels


@pytest.fixture
def context():
    ctx = ComputeContext(backend="cpu")
    yield ctx
    ctx.close()


@pytest.fixture
def bounds():
    return WorldBounds((-4.0, -4.0, -4.0), (4.0, 4.0, 4.0))


@pytest.fixture
def small_levels():
    return build_levels(16, 4)


@pytest.fixture
def rng():
    return np.random.default_rng(1234)
