"""
Consistency checks for pyramid moments and particle buffers.

These read buffers back to the host and are meant for tests and debugging,
not for the per-step hot path.
"""

from typing import List, Sequence
import logging

import numpy as np

from octree_gravity.multipole.levels import VoxelMoments

logger = logging.getLogger(__name__)


def level_masses(moments: Sequence[VoxelMoments]) -> List[float]:
    """Total mass of every level, finest first."""
    return [m.total_mass() for m in moments]


def check_mass_conservation(moments: Sequence[VoxelMoments], rtol: float = 1e-4) -> bool:
    """
    True when every level holds the mass of the level below it.

    Parameters
    ----------
    moments : sequence of VoxelMoments
        The full pyramid, level 0 first.
    rtol : float
        Relative tolerance against the finer level's mass.
    """
    masses = level_masses(moments)
    ok = True
    for index in range(1, len(masses)):
        child, parent = masses[index - 1], masses[index]
        scale = max(abs(child), 1e-30)
        if abs(parent - child) > rtol * scale:
            logger.warning(
                "Mass not conserved between level %d (%.9g) and level %d (%.9g)",
                index - 1, child, index, parent,
            )
            ok = False
    return ok


def check_finite(array, name: str = "buffer") -> bool:
    """True when every element is finite; logs how many are not."""
    host = array.host() if hasattr(array, "host") else np.asarray(array)
    bad = int(np.size(host) - np.count_nonzero(np.isfinite(host)))
    if bad:
        logger.warning("%s: %d non-finite values", name, bad)
    return bad == 0


def check_pyramid_finite(moments: Sequence[VoxelMoments]) -> bool:
    ok = True
    for level_moments in moments:
        for buffer in level_moments.buffers:
            ok &= check_finite(buffer, buffer.name)
    return ok
