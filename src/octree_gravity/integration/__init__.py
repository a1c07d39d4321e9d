"""
Integration module: kick-drift time integration of the gravity pipeline.
"""

from octree_gravity.integration.euler import KickDriftIntegrator, suggest_timestep

__all__ = [
    "KickDriftIntegrator",
    "suggest_timestep",
]
