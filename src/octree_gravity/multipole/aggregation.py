"""
Scatter-add of particle moments into the finest octree level.

Every valid particle inside the world bounds adds its mass-weighted moments
to the cell that contains it. Accumulation is a scatter-add through
:meth:`ComputeContext.scatter_add` (``numpy.add.at`` on the host, atomic adds
on the GPU), so any number of particles may land in the same cell.
"""

from typing import Optional
import logging
import warnings

import numpy as np

from octree_gravity.core.errors import DegradedAccuracyWarning
from octree_gravity.core.interfaces import Kernel
from octree_gravity.gpu.context import Buffer, ComputeContext, Owned, Slot, resolve_slot
from octree_gravity.multipole.levels import (
    Level,
    VoxelMoments,
    WorldBounds,
    cell_coordinates,
    valid_particle_mask,
)

logger = logging.getLogger(__name__)


class Aggregator(Kernel):
    """
    Monopole aggregation: ``a0 = (Σ m·x, Σ m·y, Σ m·z, Σ m)`` per cell.

    Parameters
    ----------
    context : ComputeContext
    particle_count : int
    level : Level
        The finest pyramid level.
    bounds : WorldBounds
        Read at every :meth:`run`; never modified here.
    a0 : Owned or Borrowed
        Output slot for the (cells, 4) accumulator.

    Notes
    -----
    When the context reports no float blending, sums are accumulated in
    half precision and copied into the float32 output. The run continues
    with a :class:`DegradedAccuracyWarning` issued once at construction.
    """

    name = "aggregate"

    def __init__(
        self,
        context: ComputeContext,
        particle_count: int,
        level: Level,
        bounds: WorldBounds,
        a0: Slot = Owned(),
    ):
        super().__init__(context)
        self.particle_count = context.check_capacity(particle_count, self.name)
        self.level = level
        self.bounds = bounds

        cells = level.num_cells
        buffer, owned = resolve_slot(context, a0, "moments[0].a0", (cells, 4), owner=self.name)
        self.a0 = self._own(buffer, owned)

        self.half_precision = not context.capabilities.float_blend
        self._scratch = {}
        if self.half_precision:
            warnings.warn(
                "Float blending is unavailable; accumulating moments in half precision. "
                "Cells holding many particles will lose accuracy.",
                DegradedAccuracyWarning,
            )
            self._scratch["a0"] = self._own(
                context.allocate("aggregate.a0_half", (cells, 4), np.float16, owner=self.name)
            )

        self.excluded = 0

    @property
    def moments(self) -> VoxelMoments:
        return VoxelMoments(level=self.level, a0=self.a0)

    def _accumulate(self, key: str, target: Buffer, indices, values) -> None:
        """Scatter-add into ``target``, through the half-precision scratch when required."""
        if self.half_precision and key in self._scratch:
            scratch = self._scratch[key].data
            scratch[...] = 0
            self.context.scatter_add(scratch, indices, values.astype(scratch.dtype))
            target.data[...] = scratch.astype(target.dtype)
        else:
            target.data[...] = 0
            self.context.scatter_add(target.data, indices, values.astype(target.dtype))

    def _locate(self, positions: Buffer):
        """Linear cell index and mass of every particle that contributes."""
        xp = self.context.xp
        p = positions.data
        cells, inside = cell_coordinates(xp, p[:, :3], self.bounds, self.level.resolution)
        keep = valid_particle_mask(xp, p) & inside
        self.excluded = self.particle_count - int(keep.sum())
        idx = self.level.linear_index(cells[:, 0], cells[:, 1], cells[:, 2])[keep]
        return idx, p[keep]

    def _writes(self) -> dict:
        return {"a0": self.a0}

    def run(self, positions: Optional[Buffer]) -> VoxelMoments:
        """
        Rebuild the level-0 moments from ``positions`` (N, 4).

        Raises
        ------
        PreconditionError
            If ``positions`` is missing or has the wrong shape.
        """
        self._check_alive()
        self._check_particles(positions, self.particle_count, "positions")
        xp = self.context.xp

        with self.context.dispatch(self.name, reads={"positions": positions}, writes=self._writes()):
            idx, p = self._locate(positions)
            m = p[:, 3:4]
            values = xp.concatenate([p[:, :3] * m, m], axis=1)
            self._accumulate("a0", self.a0, idx, values)
            self._accumulate_extra(idx, p)

        self.render_count += 1
        if self.excluded:
            logger.debug("%s: %d particles excluded (invalid or outside bounds)", self.name, self.excluded)
        return self.moments

    def _accumulate_extra(self, idx, p) -> None:
        pass

    def snapshot(self) -> dict:
        state = super().snapshot()
        state.update(
            particle_count=self.particle_count,
            resolution=self.level.resolution,
            half_precision=self.half_precision,
            excluded=self.excluded,
        )
        if not self.a0.released:
            state["total_mass"] = self.moments.total_mass()
        return state


class QuadrupoleAggregator(Aggregator):
    """
    Aggregation of monopole plus second-order moments.

    In addition to ``a0`` the cells accumulate
    ``a1 = (Σ m·x², Σ m·y², Σ m·z², Σ m·x·y)``,
    ``a2 = (Σ m·x·z, Σ m·y·z, 0, 0)`` and an int32 occupancy count.
    """

    name = "aggregate_quadrupole"

    def __init__(
        self,
        context: ComputeContext,
        particle_count: int,
        level: Level,
        bounds: WorldBounds,
        a0: Slot = Owned(),
        a1: Slot = Owned(),
        a2: Slot = Owned(),
        occupancy: Slot = Owned(),
    ):
        super().__init__(context, particle_count, level, bounds, a0=a0)
        cells = level.num_cells
        buffer, owned = resolve_slot(context, a1, "moments[0].a1", (cells, 4), owner=self.name)
        self.a1 = self._own(buffer, owned)
        buffer, owned = resolve_slot(context, a2, "moments[0].a2", (cells, 4), owner=self.name)
        self.a2 = self._own(buffer, owned)
        buffer, owned = resolve_slot(
            context, occupancy, "moments[0].occupancy", (cells,), dtype=np.int32, owner=self.name
        )
        self.occupancy = self._own(buffer, owned)

        if self.half_precision:
            for key in ("a1", "a2"):
                self._scratch[key] = self._own(
                    context.allocate(f"aggregate.{key}_half", (cells, 4), np.float16, owner=self.name)
                )

    @property
    def moments(self) -> VoxelMoments:
        return VoxelMoments(level=self.level, a0=self.a0, a1=self.a1, a2=self.a2, occupancy=self.occupancy)

    def _writes(self) -> dict:
        return {"a0": self.a0, "a1": self.a1, "a2": self.a2, "occupancy": self.occupancy}

    def _accumulate_extra(self, idx, p) -> None:
        xp = self.context.xp
        x, y, z, m = p[:, 0], p[:, 1], p[:, 2], p[:, 3]
        zero = xp.zeros_like(m)
        a1 = xp.stack([m * x * x, m * y * y, m * z * z, m * x * y], axis=1)
        a2 = xp.stack([m * x * z, m * y * z, zero, zero], axis=1)
        self._accumulate("a1", self.a1, idx, a1)
        self._accumulate("a2", self.a2, idx, a2)
        self.occupancy.data[...] = 0
        self.context.scatter_add(self.occupancy.data, idx, xp.ones(idx.shape[0], dtype=xp.int32))
