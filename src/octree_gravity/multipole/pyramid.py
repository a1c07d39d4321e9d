"""
Reduction of the finest-level moments into the coarser pyramid levels.

Each parent cell is the sum of its children (up to 8; a trailing odd slab of
children folds into the last parent). The child -> parent map of every level
transition is computed once and the reduction itself is a scatter-add over it.
"""

from typing import List, Optional, Sequence
import logging

import numpy as np

from octree_gravity.core.errors import ConstructionError, PreconditionError
from octree_gravity.core.interfaces import Kernel
from octree_gravity.gpu.context import Buffer, ComputeContext, Owned, Slot, resolve_slot
from octree_gravity.multipole.levels import Level, VoxelMoments, parent_index

logger = logging.getLogger(__name__)


def parent_map(child: Level, parent: Level) -> np.ndarray:
    """Flat parent cell index for every flat child cell index, as int32."""
    n = child.resolution
    p = parent.resolution
    iz, iy, ix = np.meshgrid(np.arange(n), np.arange(n), np.arange(n), indexing="ij")
    px = parent_index(ix, p)
    py = parent_index(iy, p)
    pz = parent_index(iz, p)
    return parent.linear_index(px, py, pz).ravel().astype(np.int32)


def children_range(parent_coord: int, child_resolution: int, parent_resolution: int):
    """Inclusive range of child coordinates along one axis that map to ``parent_coord``."""
    lo = 2 * parent_coord
    if parent_coord == parent_resolution - 1:
        hi = child_resolution - 1
    else:
        hi = min(2 * parent_coord + 1, child_resolution - 1)
    return lo, hi


def build_pyramid(base: np.ndarray, levels: Sequence[Level]) -> List[np.ndarray]:
    """
    Host reference reduction of one moment channel through all levels.

    Parameters
    ----------
    base : np.ndarray, shape (cells_0, ...)
        Level-0 values.
    levels : sequence of Level

    Returns
    -------
    list of np.ndarray
        One array per level, ``base`` first.
    """
    out = [np.asarray(base)]
    for child, parent in zip(levels[:-1], levels[1:]):
        values = np.zeros((parent.num_cells,) + out[-1].shape[1:], dtype=out[-1].dtype)
        np.add.at(values, parent_map(child, parent), out[-1])
        out.append(values)
    return out


class PyramidBuilder(Kernel):
    """
    Builds levels 1..L-1 from level 0.

    Parameters
    ----------
    context : ComputeContext
    levels : sequence of Level
        The full ladder, level 0 first.
    quadrupole : bool
        Also reduce ``a1``, ``a2`` and occupancy.
    outputs : sequence of Owned/Borrowed, optional
        One slot per coarse level (len(levels) - 1) for the ``a0`` channel.
        Other channels are always owned.
    """

    name = "pyramid"

    def __init__(
        self,
        context: ComputeContext,
        levels: Sequence[Level],
        quadrupole: bool = False,
        outputs: Optional[Sequence[Slot]] = None,
    ):
        super().__init__(context)
        self.levels = list(levels)
        if not self.levels:
            raise ConstructionError(f"{self.name}: at least one level is required")
        for child, parent in zip(self.levels[:-1], self.levels[1:]):
            if parent.resolution != max(1, child.resolution // 2):
                raise ConstructionError(
                    f"{self.name}: level {parent.index} has resolution {parent.resolution}, "
                    f"expected {max(1, child.resolution // 2)}"
                )
        if outputs is None:
            outputs = [Owned()] * (len(self.levels) - 1)
        if len(outputs) != len(self.levels) - 1:
            raise ConstructionError(
                f"{self.name}: expected {len(self.levels) - 1} output slots, got {len(outputs)}"
            )
        self.quadrupole = bool(quadrupole)

        self._maps: List[Buffer] = []
        self._levels_out: List[VoxelMoments] = []
        for child, parent, slot in zip(self.levels[:-1], self.levels[1:], outputs):
            self._maps.append(self._own(
                context.upload(f"pyramid.map[{parent.index}]", parent_map(child, parent), np.int32, owner=self.name)
            ))
            cells = parent.num_cells
            a0, owned = resolve_slot(context, slot, f"moments[{parent.index}].a0", (cells, 4), owner=self.name)
            moments = VoxelMoments(level=parent, a0=self._own(a0, owned))
            if self.quadrupole:
                moments.a1 = self._own(context.allocate(f"moments[{parent.index}].a1", (cells, 4), owner=self.name))
                moments.a2 = self._own(context.allocate(f"moments[{parent.index}].a2", (cells, 4), owner=self.name))
                moments.occupancy = self._own(
                    context.allocate(f"moments[{parent.index}].occupancy", (cells,), np.int32, owner=self.name)
                )
            self._levels_out.append(moments)

    @property
    def outputs(self) -> List[VoxelMoments]:
        return list(self._levels_out)

    def reduce(self, child: VoxelMoments, parent_level: int) -> VoxelMoments:
        """
        Sum one level into the next coarser one.

        Parameters
        ----------
        child : VoxelMoments
            Moments of level ``parent_level - 1``.
        parent_level : int
            Index of the level to produce (>= 1).
        """
        self._check_alive()
        if not 1 <= parent_level < len(self.levels):
            raise PreconditionError(f"{self.name}: no coarse level {parent_level}")
        parent = self._levels_out[parent_level - 1]
        mapping = self._maps[parent_level - 1]

        reads = {"a0": child.a0, "map": mapping}
        writes = {"parent.a0": parent.a0}
        if self.quadrupole:
            reads.update(a1=child.a1, a2=child.a2, occupancy=child.occupancy)
            writes.update({"parent.a1": parent.a1, "parent.a2": parent.a2, "parent.occupancy": parent.occupancy})

        if child.a0 is not None and child.a0.shape[0] != mapping.shape[0]:
            raise PreconditionError(
                f"{self.name}: child level has {child.a0.shape[0]} cells, expected {mapping.shape[0]}"
            )

        with self.context.dispatch(f"{self.name}[{parent_level}]", reads=reads, writes=writes):
            for key in ("a0", "a1", "a2", "occupancy") if self.quadrupole else ("a0",):
                target = getattr(parent, key).data
                target[...] = 0
                self.context.scatter_add(target, mapping.data, getattr(child, key).data)
        return parent

    def run(self, base: Optional[VoxelMoments]) -> List[VoxelMoments]:
        """
        Chain :meth:`reduce` from level 0 to the coarsest level.

        Returns
        -------
        list of VoxelMoments
            All levels, ``base`` first.
        """
        self._check_alive()
        if base is None:
            raise PreconditionError(f"{self.name}: level-0 moments are not bound")
        pyramid = [base]
        for index in range(1, len(self.levels)):
            pyramid.append(self.reduce(pyramid[-1], index))
        self.render_count += 1
        return pyramid

    def snapshot(self) -> dict:
        state = super().snapshot()
        state.update(
            levels=[level.resolution for level in self.levels],
            quadrupole=self.quadrupole,
        )
        if not self._disposed:
            state["level_mass"] = [m.total_mass() for m in self._levels_out]
        return state
