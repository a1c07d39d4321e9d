"""
Hierarchical min/max reduction of particle positions into world bounds.

The particle buffer is viewed as a 2-D texture of width ``ceil(sqrt(N))``.
Each pass collapses ``tile x tile`` blocks into one texel holding the block's
(min, max) corner, so ``ceil(log_tile(width))`` passes reduce the whole
buffer to a single pair. The first pass reads the particle buffer directly;
later passes alternate between two preallocated buffers whose size is fixed
at construction, independent of how many passes run.
"""

from typing import List, Optional, Tuple
import logging
import math

import numpy as np

from octree_gravity.core.errors import ConstructionError
from octree_gravity.core.interfaces import Kernel
from octree_gravity.gpu.context import Buffer, ComputeContext
from octree_gravity.multipole.levels import MIN_WORLD_EXTENT, WorldBounds, pad_bounds

logger = logging.getLogger(__name__)

DEFAULT_TILE = 8
DEFAULT_MARGIN = 0.1


def _round_up(value: int, multiple: int) -> int:
    return ((value + multiple - 1) // multiple) * multiple


def reduction_plan(particle_count: int, tile: int = DEFAULT_TILE) -> List[Tuple[int, int]]:
    """
    Padded (height, width) of the texture fed into each reduction pass.

    The first entry is the particle texture itself; every later entry is the
    output of the previous pass padded up to a whole number of tiles. The
    last pass produces a single texel.
    """
    width = max(1, math.ceil(math.sqrt(particle_count)))
    height = math.ceil(particle_count / width)
    shapes = [(_round_up(height, tile), _round_up(width, tile))]
    while True:
        h, w = shapes[-1]
        h, w = h // tile, w // tile
        if h == 1 and w == 1:
            break
        shapes.append((_round_up(h, tile), _round_up(w, tile)))
    return shapes


def _reduce_tiles(xp, source, height: int, width: int, tile: int, target) -> Tuple[int, int]:
    """One pass: ``source`` (height, width, 6) -> ``target`` (height/tile, width/tile, 6)."""
    h, w = height // tile, width // tile
    blocks = source.reshape(h, tile, w, tile, 6)
    target[:h, :w, :3] = blocks[..., :3].min(axis=(1, 3))
    target[:h, :w, 3:] = blocks[..., 3:].max(axis=(1, 3))
    return h, w


def _reduce_particles(xp, positions, count: int, width: int, tile: int, target) -> Tuple[int, int]:
    """
    First pass, reading the (N, 4) particle buffer as a texture of ``width``
    columns. Works through one band of ``tile`` texture rows at a time, so the
    scratch it needs grows with the texture edge rather than with N.
    """
    band_len = tile * width
    tiles_across = -(-width // tile)
    bands = -(-count // band_len)
    for b in range(bands):
        chunk = positions[b * band_len : min((b + 1) * band_len, count)]
        xyz = chunk[:, :3]
        mass = chunk[:, 3]
        valid = (xp.all(xp.isfinite(xyz), axis=1) & xp.isfinite(mass) & (mass > 0))[:, None]

        lo = xp.full((band_len, 3), np.inf, dtype=positions.dtype)
        hi = xp.full((band_len, 3), -np.inf, dtype=positions.dtype)
        lo[: len(chunk)] = xp.where(valid, xyz, np.inf)
        hi[: len(chunk)] = xp.where(valid, xyz, -np.inf)

        band_lo = xp.full((tile, tiles_across * tile, 3), np.inf, dtype=positions.dtype)
        band_hi = xp.full((tile, tiles_across * tile, 3), -np.inf, dtype=positions.dtype)
        band_lo[:, :width] = lo.reshape(tile, width, 3)
        band_hi[:, :width] = hi.reshape(tile, width, 3)

        target[b, :tiles_across, :3] = band_lo.reshape(tile, tiles_across, tile, 3).min(axis=(0, 2))
        target[b, :tiles_across, 3:] = band_hi.reshape(tile, tiles_across, tile, 3).max(axis=(0, 2))
    return bands, tiles_across


class BoundsReducer(Kernel):
    """
    Computes the axis-aligned box enclosing every valid particle.

    A particle is valid when its position and mass are finite and its mass is
    positive; invalid particles are excluded from the reduction (they enter
    it as +inf/-inf, the identities of min/max). The padded result is written
    into the :class:`WorldBounds` this reducer was wired with; it is the only
    component that writes them.

    Parameters
    ----------
    context : ComputeContext
    particle_count : int
    bounds : WorldBounds
        Updated in place by :meth:`run`.
    margin : float
        Padding added on every side of the reduced box.
    tile : int
        Edge of the square tile collapsed by one pass.
    readback : np.ndarray, optional
        Host storage of shape (6,) receiving the reduced corners. When
        omitted the reducer allocates its own.
    """

    name = "bounds"

    def __init__(
        self,
        context: ComputeContext,
        particle_count: int,
        bounds: WorldBounds,
        margin: float = DEFAULT_MARGIN,
        tile: int = DEFAULT_TILE,
        readback: Optional[np.ndarray] = None,
        min_extent: float = MIN_WORLD_EXTENT,
    ):
        super().__init__(context)
        self.particle_count = context.check_capacity(particle_count, self.name)
        if tile < 2:
            raise ConstructionError(f"{self.name}: tile must be at least 2, got {tile}")
        if margin < 0 or not np.isfinite(margin):
            raise ConstructionError(f"{self.name}: margin must be finite and >= 0, got {margin}")
        if readback is not None and np.asarray(readback).shape != (6,):
            raise ConstructionError(f"{self.name}: readback storage must have shape (6,), got {np.shape(readback)}")

        self.bounds = bounds
        self.margin = float(margin)
        self.min_extent = float(min_extent)
        self.tile = int(tile)
        self.readback = readback if readback is not None else np.zeros(6, dtype=np.float32)

        self.plan = reduction_plan(self.particle_count, self.tile)
        self.texture_width = max(1, math.ceil(math.sqrt(self.particle_count)))
        # Ping-pong buffers: pass k writes buffer k % 2. Pass outputs shrink,
        # so each buffer is sized by the first pass that writes it.
        sizes = [h * w for h, w in self.plan[1:]] + [1, 1]
        ping, pong = sizes[0], sizes[1]
        self._ping = self._own(context.allocate("bounds.ping", (ping * 6,), np.float32, owner=self.name))
        self._pong = self._own(context.allocate("bounds.pong", (pong * 6,), np.float32, owner=self.name))

        self.last_valid = False
        logger.debug("%s: %d particles, %d passes, plan=%s", self.name, self.particle_count, len(self.plan), self.plan)

    @property
    def num_passes(self) -> int:
        return len(self.plan)

    def _view(self, buffer: Buffer, height: int, width: int):
        return buffer.data[: height * width * 6].reshape(height, width, 6)

    def run(self, positions: Optional[Buffer]) -> WorldBounds:
        """
        Reduce ``positions`` (N, 4) and update the wired world bounds.

        Retains the previous bounds when no particle is valid.

        Returns
        -------
        WorldBounds
            The same object the reducer was constructed with.
        """
        self._check_alive()
        self._check_particles(positions, self.particle_count, "positions")
        xp = self.context.xp
        tile = self.tile

        with self.context.dispatch(
            self.name,
            reads={"positions": positions},
            writes={"ping": self._ping, "pong": self._pong},
        ):
            height, width = self.plan[0]
            source = None
            for k in range(len(self.plan)):
                target_buffer = self._ping if k % 2 == 0 else self._pong
                if k + 1 < len(self.plan):
                    next_h, next_w = self.plan[k + 1]
                else:
                    next_h, next_w = 1, 1
                target = self._view(target_buffer, next_h, next_w)
                target[..., :3] = np.inf
                target[..., 3:] = -np.inf
                if source is None:
                    _reduce_particles(xp, positions.data, self.particle_count, self.texture_width, tile, target)
                else:
                    _reduce_tiles(xp, source, height, width, tile, target)
                source = target
                height, width = next_h, next_w

            result = self.context.read_back(source[0, 0], out=self.readback)

        self.render_count += 1
        lo = result[:3].astype(np.float64)
        hi = result[3:].astype(np.float64)
        if not (np.all(np.isfinite(lo)) and np.all(np.isfinite(hi))):
            self.last_valid = False
            logger.debug("%s: no valid particles, keeping %s", self.name, self.bounds)
            return self.bounds

        lo, hi = pad_bounds(lo, hi, self.margin, self.min_extent)
        self.bounds._assign(lo, hi)
        self.last_valid = True
        logger.debug("%s: bounds updated to %s", self.name, self.bounds)
        return self.bounds

    def snapshot(self) -> dict:
        state = super().snapshot()
        state.update(
            particle_count=self.particle_count,
            plan=list(self.plan),
            margin=self.margin,
            last_valid=self.last_valid,
            bounds=self.bounds.snapshot(),
        )
        return state
