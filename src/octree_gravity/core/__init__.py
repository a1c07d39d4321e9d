"""
Core module: errors, stage interface, pipeline wiring, orchestrator and diagnostics.
"""

from octree_gravity.core.errors import (
    GravityError,
    ConstructionError,
    CapabilityError,
    PreconditionError,
    DisposedError,
    KernelCompileError,
    DegradedAccuracyWarning,
)
from octree_gravity.core.interfaces import Kernel
from octree_gravity.core.pipeline import PipelineGraph, Stage
from octree_gravity.core.diagnostics import GravityDiagnostics
from octree_gravity.core.system import (
    GravitySystem,
    GravityConfig,
    SystemState,
)

__all__ = [
    "GravityError",
    "ConstructionError",
    "CapabilityError",
    "PreconditionError",
    "DisposedError",
    "KernelCompileError",
    "DegradedAccuracyWarning",
    "Kernel",
    "PipelineGraph",
    "Stage",
    "GravityDiagnostics",
    "GravitySystem",
    "GravityConfig",
    "SystemState",
]
