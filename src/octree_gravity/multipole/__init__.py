"""
Multipole module: world bounds, moment pyramid and force traversal.
"""

from octree_gravity.multipole.levels import (
    WorldBounds,
    Level,
    VoxelMoments,
    build_levels,
    MAX_LEVELS_MONOPOLE,
    MAX_LEVELS_QUADRUPOLE,
)
from octree_gravity.multipole.bounds import BoundsReducer
from octree_gravity.multipole.aggregation import Aggregator, QuadrupoleAggregator
from octree_gravity.multipole.pyramid import PyramidBuilder, build_pyramid
from octree_gravity.multipole.traversal import (
    Traversal,
    QuadrupoleTraversal,
    classify_cell,
    default_neighbourhood_radius,
    FAR,
    NEAR,
    STRADDLE,
)
from octree_gravity.multipole.validators import check_mass_conservation, check_finite

__all__ = [
    "WorldBounds",
    "Level",
    "VoxelMoments",
    "build_levels",
    "MAX_LEVELS_MONOPOLE",
    "MAX_LEVELS_QUADRUPOLE",
    "BoundsReducer",
    "Aggregator",
    "QuadrupoleAggregator",
    "PyramidBuilder",
    "build_pyramid",
    "Traversal",
    "QuadrupoleTraversal",
    "classify_cell",
    "default_neighbourhood_radius",
    "FAR",
    "NEAR",
    "STRADDLE",
    "check_mass_conservation",
    "check_finite",
]
