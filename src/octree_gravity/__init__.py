"""
octree_gravity: GPU-style Barnes-Hut octree gravity for N-body particles.

Approximates Newtonian gravity in O(N log N) with a pyramid of voxel moment
grids (monopole or quadrupole), a windowed top-down traversal and a
kick-drift integrator. Runs on NumPy/Numba or, with CuPy, on NVIDIA GPUs.
"""

__version__ = "1.0.0"
__author__ = "octree-gravity Dev Team"

# Core imports for convenience
from octree_gravity.core.errors import (
    GravityError,
    ConstructionError,
    CapabilityError,
    PreconditionError,
    DisposedError,
    KernelCompileError,
    DegradedAccuracyWarning,
)
from octree_gravity.core.system import GravitySystem, GravityConfig, SystemState
from octree_gravity.gpu.context import ComputeContext, Owned, Borrowed
from octree_gravity.particles import ParticleSet

__all__ = [
    "GravityError",
    "ConstructionError",
    "CapabilityError",
    "PreconditionError",
    "DisposedError",
    "KernelCompileError",
    "DegradedAccuracyWarning",
    "GravitySystem",
    "GravityConfig",
    "SystemState",
    "ComputeContext",
    "Owned",
    "Borrowed",
    "ParticleSet",
]
