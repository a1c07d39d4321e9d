"""
Data model shared by the multipole kernels: world bounds, pyramid levels and
per-level voxel moment accumulators.

Storage layout
--------------
A level of resolution ``n`` stores ``n**3`` cells in a flat array indexed by
``(iz * n + iy) * n + ix``. For inspection the same cells can be packed into a
2-D atlas of z-slices (``Level.texel``), which is how the moments are laid out
in texture memory on devices without 3-D render targets.

Moment channels
---------------
``a0 = (Σ m·x, Σ m·y, Σ m·z, Σ m)``
``a1 = (Σ m·x², Σ m·y², Σ m·z², Σ m·x·y)``   (quadrupole only)
``a2 = (Σ m·x·z, Σ m·y·z, 0, 0)``            (quadrupole only)
``occupancy``: number of particles aggregated below the cell (quadrupole only)
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple
import math

import numpy as np

from octree_gravity.core.errors import ConstructionError
from octree_gravity.gpu.context import Buffer

DEFAULT_WORLD_MIN = (-4.0, -4.0, -4.0)
DEFAULT_WORLD_MAX = (4.0, 4.0, 4.0)

# Smallest allowed edge of the world box; keeps cells of flat distributions finite.
MIN_WORLD_EXTENT = 1e-3

# Cells with less mass than this are treated as empty.
NEGLIGIBLE_MASS = 1e-10


class WorldBounds:
    """
    Axis-aligned box enclosing the simulated particles.

    Only :class:`~octree_gravity.multipole.bounds.BoundsReducer` updates an
    existing instance (through :meth:`_assign`); every other component reads it.
    """

    def __init__(
        self,
        min_corner: Sequence[float] = DEFAULT_WORLD_MIN,
        max_corner: Sequence[float] = DEFAULT_WORLD_MAX,
    ):
        lo = np.asarray(min_corner, dtype=np.float64).reshape(3)
        hi = np.asarray(max_corner, dtype=np.float64).reshape(3)
        if not (np.all(np.isfinite(lo)) and np.all(np.isfinite(hi))):
            raise ConstructionError(f"World bounds must be finite, got {lo} .. {hi}")
        if np.any(hi <= lo):
            raise ConstructionError(f"World bounds max must exceed min on every axis, got {lo} .. {hi}")
        self._min = lo
        self._max = hi
        self.version = 0

    @property
    def min(self) -> np.ndarray:
        return self._min.copy()

    @property
    def max(self) -> np.ndarray:
        return self._max.copy()

    @property
    def extent(self) -> np.ndarray:
        return self._max - self._min

    def _assign(self, min_corner: np.ndarray, max_corner: np.ndarray) -> None:
        self._min = np.asarray(min_corner, dtype=np.float64).reshape(3).copy()
        self._max = np.asarray(max_corner, dtype=np.float64).reshape(3).copy()
        self.version += 1

    def contains(self, points: np.ndarray) -> np.ndarray:
        """Boolean mask of points inside the half-open box ``[min, max)``."""
        p = np.asarray(points, dtype=np.float64)[..., :3]
        return np.all((p >= self._min) & (p < self._max), axis=-1)

    def snapshot(self) -> dict:
        return {"min": self._min.tolist(), "max": self._max.tolist(), "version": self.version}

    def copy(self) -> "WorldBounds":
        clone = WorldBounds(self._min, self._max)
        clone.version = self.version
        return clone

    def __repr__(self) -> str:
        return f"WorldBounds(min={self._min.tolist()}, max={self._max.tolist()})"


def pad_bounds(
    min_corner: np.ndarray,
    max_corner: np.ndarray,
    margin: float,
    min_extent: float = MIN_WORLD_EXTENT,
) -> Tuple[np.ndarray, np.ndarray]:
    """Grow a raw min/max pair by ``margin`` and to at least ``min_extent`` per axis."""
    lo = np.asarray(min_corner, dtype=np.float64) - margin
    hi = np.asarray(max_corner, dtype=np.float64) + margin
    short = (hi - lo) < min_extent
    if np.any(short):
        centre = 0.5 * (lo + hi)
        lo = np.where(short, centre - 0.5 * min_extent, lo)
        hi = np.where(short, centre + 0.5 * min_extent, hi)
    return lo, hi


@dataclass(frozen=True)
class Level:
    """
    One tier of the octree pyramid.

    Attributes
    ----------
    index : int
        0 is the finest level.
    resolution : int
        Cells per axis.
    slices_per_row : int
        Number of z-slices packed side by side in the 2-D atlas layout.
    """

    index: int
    resolution: int
    slices_per_row: int = 1

    @property
    def num_cells(self) -> int:
        return self.resolution ** 3

    @property
    def atlas_shape(self) -> Tuple[int, int]:
        """(height, width) of the 2-D atlas holding all z-slices."""
        n = self.resolution
        rows = math.ceil(n / self.slices_per_row)
        return rows * n, self.slices_per_row * n

    def linear_index(self, ix, iy, iz):
        n = self.resolution
        return (iz * n + iy) * n + ix

    def texel(self, ix, iy, iz):
        """Atlas coordinate (x, y) of a cell."""
        n = self.resolution
        row = iz // self.slices_per_row
        col = iz - row * self.slices_per_row
        return col * n + ix, row * n + iy

    def cell_edges(self, bounds: WorldBounds) -> np.ndarray:
        """World-space edge lengths of one cell along x, y, z."""
        return bounds.extent / self.resolution

    def cell_size(self, bounds: WorldBounds) -> float:
        """Scalar cell size used by the acceptance criterion (longest edge)."""
        return float(np.max(self.cell_edges(bounds)))


def parent_index(child, parent_resolution):
    """
    Parent coordinate of a child coordinate along one axis.

    Resolutions halve with rounding down, so an odd child grid has one
    trailing slab with no "natural" parent; it folds into the last parent so
    no mass is lost between levels.
    """
    return np.minimum(np.asarray(child) // 2, parent_resolution - 1)


def build_levels(
    base_resolution: int,
    num_levels: int,
    slices_per_row: Optional[int] = None,
) -> List[Level]:
    """
    Resolution ladder from the finest level (index 0) to the coarsest.

    Each level halves the resolution of its child, rounding down, never below 1.

    Raises
    ------
    ConstructionError
        For a non-positive resolution or level count.
    """
    if int(base_resolution) != base_resolution or base_resolution < 1:
        raise ConstructionError(f"base grid resolution must be a positive integer, got {base_resolution}")
    if int(num_levels) != num_levels or num_levels < 1:
        raise ConstructionError(f"number of levels must be a positive integer, got {num_levels}")

    resolution = int(base_resolution)
    spr = int(slices_per_row) if slices_per_row else max(1, math.ceil(math.sqrt(resolution)))
    if spr < 1:
        raise ConstructionError(f"slices_per_row must be positive, got {slices_per_row}")

    levels = []
    for index in range(int(num_levels)):
        levels.append(Level(index=index, resolution=resolution, slices_per_row=min(spr, resolution)))
        resolution = max(1, resolution // 2)
        spr = max(1, spr // 2)
    return levels


@dataclass(eq=False)
class VoxelMoments:
    """
    Moment accumulators of one pyramid level.

    The buffers belong to the kernel that produced them (aggregator or
    pyramid builder); this object is only a typed view over them.
    """

    level: Level
    a0: Buffer
    a1: Optional[Buffer] = None
    a2: Optional[Buffer] = None
    occupancy: Optional[Buffer] = None

    @property
    def is_quadrupole(self) -> bool:
        return self.a1 is not None and self.a2 is not None

    @property
    def buffers(self) -> List[Buffer]:
        return [b for b in (self.a0, self.a1, self.a2, self.occupancy) if b is not None]

    def total_mass(self) -> float:
        return float(np.sum(self.a0.host()[:, 3], dtype=np.float64))

    def occupied_cells(self) -> int:
        if self.occupancy is not None:
            return int(np.count_nonzero(self.occupancy.host()))
        return int(np.count_nonzero(self.a0.host()[:, 3] > NEGLIGIBLE_MASS))

    def to_atlas(self, channel: str = "a0") -> np.ndarray:
        """Pack one channel into its 2-D atlas, shape (height, width, 4)."""
        buffer = getattr(self, channel)
        if buffer is None:
            raise ValueError(f"Level {self.level.index} has no '{channel}' channel")
        data = buffer.host().reshape(self.level.num_cells, -1)
        n = self.level.resolution
        iz, iy, ix = np.meshgrid(np.arange(n), np.arange(n), np.arange(n), indexing="ij")
        tx, ty = self.level.texel(ix.ravel(), iy.ravel(), iz.ravel())
        height, width = self.level.atlas_shape
        atlas = np.zeros((height, width, data.shape[1]), dtype=data.dtype)
        atlas[ty, tx] = data[self.level.linear_index(ix.ravel(), iy.ravel(), iz.ravel())]
        return atlas

    def summary(self) -> dict:
        host = self.a0.host()
        mass = host[:, 3]
        occupied = mass > NEGLIGIBLE_MASS
        return {
            "level": self.level.index,
            "resolution": self.level.resolution,
            "occupied": int(np.count_nonzero(occupied)),
            "cells": self.level.num_cells,
            "total_mass": float(np.sum(mass, dtype=np.float64)),
            "max_mass": float(mass.max()) if mass.size else 0.0,
        }


def valid_particle_mask(xp, positions):
    """Particles with finite position and finite, positive mass."""
    xyz = positions[:, :3]
    mass = positions[:, 3]
    return xp.all(xp.isfinite(xyz), axis=1) & xp.isfinite(mass) & (mass > 0)


def cell_coordinates(xp, xyz, bounds: WorldBounds, resolution: int):
    """
    Integer cell coordinates of points on a grid spanning ``bounds``.

    Aggregation and traversal both locate particles through this function so
    they agree on cell membership to the last bit.

    Returns
    -------
    cells : array of int32, shape (N, 3)
        Coordinates clamped into ``[0, resolution - 1]``.
    inside : array of bool, shape (N,)
        True for points inside the half-open box ``[min, max)``.
    """
    lo = xp.asarray(bounds.min, dtype=xp.float32)
    extent = xp.asarray(bounds.extent, dtype=xp.float32)
    u = (xyz.astype(xp.float32) - lo) / extent
    finite = xp.isfinite(u)
    inside = xp.all(finite & (u >= 0) & (u < 1), axis=1)
    u = xp.where(finite, u, xp.float32(0))
    scaled = xp.clip(u * xp.float32(resolution), 0, resolution - 1)
    cells = xp.floor(scaled).astype(xp.int32)
    return cells, inside


# Deepest supported pyramids. The quadrupole traversal samples three moment
# channels per cell, which limits it to fewer levels than the monopole one.
MAX_LEVELS_MONOPOLE = 8
MAX_LEVELS_QUADRUPOLE = 4
DEFAULT_LEVELS_MONOPOLE = 7
DEFAULT_LEVELS_QUADRUPOLE = 4


def check_level_count(num_levels: int, quadrupole: bool) -> int:
    """
    Raises
    ------
    ConstructionError
        If ``num_levels`` exceeds the cap of the chosen multipole order.
    """
    cap = MAX_LEVELS_QUADRUPOLE if quadrupole else MAX_LEVELS_MONOPOLE
    order = "quadrupole" if quadrupole else "monopole"
    if num_levels < 1 or num_levels > cap:
        raise ConstructionError(f"{order} pyramid supports 1..{cap} levels, got {num_levels}")
    return int(num_levels)
