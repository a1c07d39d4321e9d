"""
Top-down force traversal of the moment pyramid.

For each particle the levels are scanned from the coarsest to the finest.
The coarsest level is scanned completely; every finer level only inside a
cube of ``radius`` cells (Chebyshev distance) around the particle's own cell.

Acceptance criterion
--------------------
With ``near``/``far`` the distances from the particle to the nearest and
farthest point of a cell and ``size`` the cell's longest edge:

* FAR       ``near * theta >= size``: the whole cell is accepted.
* NEAR      ``far * theta < size``: the cell must be opened.
* STRADDLE  otherwise: the cell is opened as well.

The particle's own cell is always opened.

Counting every mass once
------------------------
A cell at level ``l`` is *reached* when each of its ancestors lies inside the
scan window of its level and is opened. Reached cells contribute

* at level 0: their full moments (the own cell minus the particle itself);
* if not opened: their full moments;
* if opened: the residual ``cell - Σ children inside the finer window``.
  The children inside the window are reached and handled one level down.

Following any particle's chain of ancestors from the top, its mass lands in
exactly one of these terms, for any window radius >= 1. The radius therefore
only trades accuracy (how deep nearby regions are resolved) for speed.

Force law
---------
Monopole: ``a = -G m r / d^3`` with ``r = p - com`` and ``d^2 = |r|^2 + eps^2``.
Quadrupole adds ``G [Q r / d^5 - 5/2 (r.Q.r) r / d^7]`` with the traceless
tensor ``Q = 3 S - tr(S) I`` of the central second moments ``S``.
"""

from typing import Optional, Sequence
import logging
import math
import warnings

import numpy as np
from numba import njit, prange

from octree_gravity.core.errors import ConstructionError, DegradedAccuracyWarning, PreconditionError
from octree_gravity.core.interfaces import Kernel
from octree_gravity.gpu.context import Buffer, ComputeContext, Owned, Slot, resolve_slot
from octree_gravity.multipole.levels import (
    NEGLIGIBLE_MASS,
    Level,
    VoxelMoments,
    WorldBounds,
    cell_coordinates,
    check_level_count,
)

logger = logging.getLogger(__name__)

FAR = 0
NEAR = 1
STRADDLE = 2

# A residual lighter than this fraction of its cell is cancellation noise.
RESIDUAL_MASS_FRACTION = 1e-5

THREADS_PER_BLOCK = 128


def default_neighbourhood_radius(theta: float) -> int:
    """Scan radius (in cells) around the particle's own cell: ``ceil(1/theta) + 1``."""
    return int(math.ceil(1.0 / theta)) + 1


def minimum_neighbourhood_radius(theta: float) -> int:
    """Smallest radius that still resolves every cell the criterion would open."""
    return int(math.ceil(1.0 / theta))


# ----------------------------------------------------------------------------
# Numba kernels
# ----------------------------------------------------------------------------

# fastmath without the no-NaN/no-Inf assumptions; the kernels test finiteness.
FASTMATH = {"nsz", "arcp", "contract", "afn", "reassoc"}


@njit(fastmath=FASTMATH)
def _axis_distances(p, lo, e):
    hi = lo + e
    if p < lo:
        d = lo - p
    elif p > hi:
        d = p - hi
    else:
        d = 0.0
    return d, max(abs(p - lo), abs(p - hi))


@njit(fastmath=FASTMATH)
def _box_distances(px, py, pz, x0, y0, z0, ex, ey, ez):
    """Distance from a point to the nearest and farthest point of a box."""
    dx, fx = _axis_distances(px, x0, ex)
    dy, fy = _axis_distances(py, y0, ey)
    dz, fz = _axis_distances(pz, z0, ez)
    return np.sqrt(dx * dx + dy * dy + dz * dz), np.sqrt(fx * fx + fy * fy + fz * fz)


@njit(fastmath=FASTMATH)
def _classify(near, far, size, theta):
    if near * theta >= size:
        return FAR
    if far * theta < size:
        return NEAR
    return STRADDLE


@njit(fastmath=FASTMATH)
def _is_opened(px, py, pz, cx, cy, cz, ox, oy, oz, bmin, ex, ey, ez, theta):
    if cx == ox and cy == oy and cz == oz:
        return True
    near, far = _box_distances(
        px, py, pz,
        bmin[0] + cx * ex, bmin[1] + cy * ey, bmin[2] + cz * ez,
        ex, ey, ez,
    )
    return _classify(near, far, max(ex, max(ey, ez)), theta) != FAR


@njit(fastmath=FASTMATH)
def _in_window(cx, cy, cz, ox, oy, oz, radius):
    return abs(cx - ox) <= radius and abs(cy - oy) <= radius and abs(cz - oz) <= radius


@njit(fastmath=FASTMATH)
def _reached(level, cx, cy, cz, px, py, pz, own, res, bmin, extent, theta, radius):
    """True when every ancestor of the cell is inside its window and opened."""
    n_levels = res.shape[0]
    for k in range(level + 1, n_levels):
        cx = min(cx // 2, res[k] - 1)
        cy = min(cy // 2, res[k] - 1)
        cz = min(cz // 2, res[k] - 1)
        if k < n_levels - 1 and not _in_window(cx, cy, cz, own[k, 0], own[k, 1], own[k, 2], radius):
            return False
        ex = extent[0] / res[k]
        ey = extent[1] / res[k]
        ez = extent[2] / res[k]
        if not _is_opened(px, py, pz, cx, cy, cz, own[k, 0], own[k, 1], own[k, 2], bmin, ex, ey, ez, theta):
            return False
    return True


@njit(fastmath=FASTMATH)
def _point_mass_accel(px, py, pz, mom, G, eps2, use_quad):
    """
    Acceleration from one set of moments.

    ``mom`` holds (Σmx, Σmy, Σmz, m, Σmxx, Σmyy, Σmzz, Σmxy, Σmxz, Σmyz).
    """
    m = mom[3]
    cx = mom[0] / m
    cy = mom[1] / m
    cz = mom[2] / m
    rx = px - cx
    ry = py - cy
    rz = pz - cz
    d2 = rx * rx + ry * ry + rz * rz + eps2
    inv_d = 1.0 / np.sqrt(d2)
    inv_d3 = inv_d * inv_d * inv_d
    ax = -G * m * rx * inv_d3
    ay = -G * m * ry * inv_d3
    az = -G * m * rz * inv_d3

    if use_quad:
        sxx = mom[4] - m * cx * cx
        syy = mom[5] - m * cy * cy
        szz = mom[6] - m * cz * cz
        sxy = mom[7] - m * cx * cy
        sxz = mom[8] - m * cx * cz
        syz = mom[9] - m * cy * cz
        tr = sxx + syy + szz
        qxx = 3.0 * sxx - tr
        qyy = 3.0 * syy - tr
        qzz = 3.0 * szz - tr
        qxy = 3.0 * sxy
        qxz = 3.0 * sxz
        qyz = 3.0 * syz
        qrx = qxx * rx + qxy * ry + qxz * rz
        qry = qxy * rx + qyy * ry + qyz * rz
        qrz = qxz * rx + qyz * ry + qzz * rz
        rqr = rx * qrx + ry * qry + rz * qrz
        inv_d5 = inv_d3 * inv_d * inv_d
        inv_d7 = inv_d5 * inv_d * inv_d
        ax += G * (qrx * inv_d5 - 2.5 * rqr * rx * inv_d7)
        ay += G * (qry * inv_d5 - 2.5 * rqr * ry * inv_d7)
        az += G * (qrz * inv_d5 - 2.5 * rqr * rz * inv_d7)

    return ax, ay, az


@njit(fastmath=FASTMATH)
def _load(mom, flat, a0, a1, a2, use_quad, sign):
    for c in range(4):
        mom[c] += sign * a0[flat, c]
    if use_quad:
        for c in range(4):
            mom[4 + c] += sign * a1[flat, c]
        mom[8] += sign * a2[flat, 0]
        mom[9] += sign * a2[flat, 1]


@njit(parallel=True, fastmath=FASTMATH)
def _traverse_kernel(pos, own0, inside, a0, a1, a2, occ, offsets, res, bmin, extent,
                     theta, G, eps2, radius, use_quad, use_occ, out):
    """Per-particle traversal; writes accelerations into ``out`` (N, 3)."""
    n = pos.shape[0]
    n_levels = res.shape[0]

    for i in prange(n):
        out[i, 0] = 0.0
        out[i, 1] = 0.0
        out[i, 2] = 0.0

        px = np.float64(pos[i, 0])
        py = np.float64(pos[i, 1])
        pz = np.float64(pos[i, 2])
        pm = np.float64(pos[i, 3])
        if not (np.isfinite(px) and np.isfinite(py) and np.isfinite(pz) and np.isfinite(pm)) or pm <= 0.0:
            continue

        own = np.empty((n_levels, 3), dtype=np.int64)
        own[0, 0] = own0[i, 0]
        own[0, 1] = own0[i, 1]
        own[0, 2] = own0[i, 2]
        for k in range(1, n_levels):
            for axis in range(3):
                own[k, axis] = min(own[k - 1, axis] // 2, res[k] - 1)

        mom = np.empty(10, dtype=np.float64)
        ax = 0.0
        ay = 0.0
        az = 0.0

        for level in range(n_levels - 1, -1, -1):
            nres = res[level]
            off = offsets[level]
            ex = extent[0] / nres
            ey = extent[1] / nres
            ez = extent[2] / nres
            ox = own[level, 0]
            oy = own[level, 1]
            oz = own[level, 2]

            if level == n_levels - 1:
                x_lo, x_hi, y_lo, y_hi, z_lo, z_hi = 0, nres - 1, 0, nres - 1, 0, nres - 1
            else:
                x_lo = max(ox - radius, 0)
                x_hi = min(ox + radius, nres - 1)
                y_lo = max(oy - radius, 0)
                y_hi = min(oy + radius, nres - 1)
                z_lo = max(oz - radius, 0)
                z_hi = min(oz + radius, nres - 1)

            for cz in range(z_lo, z_hi + 1):
                for cy in range(y_lo, y_hi + 1):
                    for cx in range(x_lo, x_hi + 1):
                        flat = off + (cz * nres + cy) * nres + cx
                        if use_occ and occ[flat] == 0:
                            continue
                        if a0[flat, 3] < NEGLIGIBLE_MASS:
                            continue
                        if not _reached(level, cx, cy, cz, px, py, pz, own, res, bmin, extent, theta, radius):
                            continue

                        is_own = cx == ox and cy == oy and cz == oz
                        for c in range(10):
                            mom[c] = 0.0
                        _load(mom, flat, a0, a1, a2, use_quad, 1.0)
                        cell_mass = mom[3]
                        threshold = NEGLIGIBLE_MASS

                        if level == 0:
                            if is_own and inside[i]:
                                mom[0] -= pm * px
                                mom[1] -= pm * py
                                mom[2] -= pm * pz
                                mom[3] -= pm
                                if use_quad:
                                    mom[4] -= pm * px * px
                                    mom[5] -= pm * py * py
                                    mom[6] -= pm * pz * pz
                                    mom[7] -= pm * px * py
                                    mom[8] -= pm * px * pz
                                    mom[9] -= pm * py * pz
                                threshold = max(NEGLIGIBLE_MASS, RESIDUAL_MASS_FRACTION * cell_mass)
                        elif _is_opened(px, py, pz, cx, cy, cz, ox, oy, oz, bmin, ex, ey, ez, theta):
                            # Opened: subtract the children evaluated one level down.
                            cres = res[level - 1]
                            coff = offsets[level - 1]
                            cox = own[level - 1, 0]
                            coy = own[level - 1, 1]
                            coz = own[level - 1, 2]
                            clx = 2 * cx
                            chx = cres - 1 if cx == nres - 1 else min(2 * cx + 1, cres - 1)
                            cly = 2 * cy
                            chy = cres - 1 if cy == nres - 1 else min(2 * cy + 1, cres - 1)
                            clz = 2 * cz
                            chz = cres - 1 if cz == nres - 1 else min(2 * cz + 1, cres - 1)
                            if (clx >= cox - radius and chx <= cox + radius
                                    and cly >= coy - radius and chy <= coy + radius
                                    and clz >= coz - radius and chz <= coz + radius):
                                continue
                            for kz in range(clz, chz + 1):
                                for ky in range(cly, chy + 1):
                                    for kx in range(clx, chx + 1):
                                        if _in_window(kx, ky, kz, cox, coy, coz, radius):
                                            cflat = coff + (kz * cres + ky) * cres + kx
                                            _load(mom, cflat, a0, a1, a2, use_quad, -1.0)
                            threshold = max(NEGLIGIBLE_MASS, RESIDUAL_MASS_FRACTION * cell_mass)

                        if mom[3] < threshold:
                            continue
                        dax, day, daz = _point_mass_accel(px, py, pz, mom, G, eps2, use_quad)
                        ax += dax
                        ay += day
                        az += daz

        out[i, 0] = ax
        out[i, 1] = ay
        out[i, 2] = az


def classify_cell(point, cell_min, cell_max, theta: float) -> int:
    """
    Classify a cell against the acceptance criterion.

    Parameters
    ----------
    point : array_like, shape (3,)
    cell_min, cell_max : array_like, shape (3,)
        Corners of the cell.
    theta : float
        Opening angle.

    Returns
    -------
    int
        One of ``FAR``, ``NEAR``, ``STRADDLE``.
    """
    p = np.asarray(point, dtype=np.float64)
    lo = np.asarray(cell_min, dtype=np.float64)
    e = np.asarray(cell_max, dtype=np.float64) - lo
    near, far = _box_distances(p[0], p[1], p[2], lo[0], lo[1], lo[2], e[0], e[1], e[2])
    return int(_classify(near, far, float(np.max(e)), float(theta)))


# ----------------------------------------------------------------------------
# Kernel classes
# ----------------------------------------------------------------------------

class Traversal(Kernel):
    """
    Monopole force traversal.

    Parameters
    ----------
    context : ComputeContext
    particle_count : int
    levels : sequence of Level
        The pyramid ladder, level 0 first.
    bounds : WorldBounds
        Read at every :meth:`run`.
    theta : float
        Opening angle; smaller is more accurate.
    gravity_strength : float
        Gravitational constant G.
    softening : float
        Plummer softening length eps.
    neighbourhood_radius : int, optional
        Scan radius in cells; defaults to ``ceil(1/theta) + 1``.
    use_occupancy_mask : bool
        Skip cells with zero occupancy before reading their moments
        (quadrupole only; no effect on the result).
    force : Owned or Borrowed
        Output slot for the (N, 3) accelerations.

    Raises
    ------
    ConstructionError
        For invalid parameters or too many levels.
    """

    name = "traverse"
    quadrupole = False

    def __init__(
        self,
        context: ComputeContext,
        particle_count: int,
        levels: Sequence[Level],
        bounds: WorldBounds,
        theta: float = 0.5,
        gravity_strength: float = 3e-4,
        softening: float = 0.2,
        neighbourhood_radius: Optional[int] = None,
        use_occupancy_mask: bool = False,
        force: Slot = Owned(),
    ):
        super().__init__(context)
        self.particle_count = context.check_capacity(particle_count, self.name)
        self.levels = list(levels)
        check_level_count(len(self.levels), self.quadrupole)

        if not (np.isfinite(theta) and theta > 0):
            raise ConstructionError(f"{self.name}: theta must be positive, got {theta}")
        if not (np.isfinite(softening) and softening >= 0):
            raise ConstructionError(f"{self.name}: softening must be >= 0, got {softening}")
        if not np.isfinite(gravity_strength):
            raise ConstructionError(f"{self.name}: gravity_strength must be finite, got {gravity_strength}")
        if use_occupancy_mask and not self.quadrupole:
            raise ConstructionError(f"{self.name}: the occupancy mask needs quadrupole moments")

        if neighbourhood_radius is None:
            neighbourhood_radius = default_neighbourhood_radius(theta)
        if int(neighbourhood_radius) != neighbourhood_radius or neighbourhood_radius < 1:
            raise ConstructionError(
                f"{self.name}: neighbourhood_radius must be a positive integer, got {neighbourhood_radius}"
            )
        if neighbourhood_radius < minimum_neighbourhood_radius(theta):
            warnings.warn(
                f"neighbourhood_radius={neighbourhood_radius} is below ceil(1/theta)="
                f"{minimum_neighbourhood_radius(theta)}; nearby cells are resolved at coarser levels",
                DegradedAccuracyWarning,
            )

        self.bounds = bounds
        self.theta = float(theta)
        self.gravity_strength = float(gravity_strength)
        self.softening = float(softening)
        self.radius = int(neighbourhood_radius)
        self.use_occupancy_mask = bool(use_occupancy_mask)

        buffer, owned = resolve_slot(context, force, "force", (self.particle_count, 3), owner=self.name)
        self.force = self._own(buffer, owned)

        cells = [level.num_cells for level in self.levels]
        self.offsets = np.concatenate([[0], np.cumsum(cells)[:-1]]).astype(np.int64)
        self.resolutions = np.array([level.resolution for level in self.levels], dtype=np.int64)
        total = int(sum(cells))

        self._packed = {"a0": self._own(context.allocate("traverse.a0", (total, 4), owner=self.name))}
        if self.quadrupole:
            self._packed["a1"] = self._own(context.allocate("traverse.a1", (total, 4), owner=self.name))
            self._packed["a2"] = self._own(context.allocate("traverse.a2", (total, 4), owner=self.name))
        if self.use_occupancy_mask:
            self._packed["occupancy"] = self._own(
                context.allocate("traverse.occupancy", (total,), np.int32, owner=self.name)
            )

        self._function = None
        if context.is_gpu:
            from octree_gravity.gpu.traversal_kernels import TRAVERSAL_SOURCE

            module = context.compile(TRAVERSAL_SOURCE, "octree_traversal", options=("-std=c++11",))
            self._function = module.get_function("traverse_octree")
            self._level_info = self._own(context.upload(
                "traverse.levels", np.stack([self.offsets, self.resolutions], axis=1), np.int64, owner=self.name
            ))

        logger.debug(
            "%s: %d levels %s, theta=%.3f, radius=%d",
            self.name, len(self.levels), self.resolutions.tolist(), self.theta, self.radius,
        )

    def _channels(self):
        channels = ["a0"]
        if self.quadrupole:
            channels += ["a1", "a2"]
        if self.use_occupancy_mask:
            channels.append("occupancy")
        return channels

    def run(self, positions: Optional[Buffer], moments: Optional[Sequence[Optional[VoxelMoments]]]) -> Buffer:
        """
        Compute per-particle accelerations.

        Parameters
        ----------
        positions : Buffer, shape (N, 4)
        moments : sequence of VoxelMoments
            One entry per level, level 0 first.

        Returns
        -------
        Buffer
            The (N, 3) force buffer.

        Raises
        ------
        PreconditionError
            If positions or any level's moments are missing.
        """
        self._check_alive()
        self._check_particles(positions, self.particle_count, "positions")
        if moments is None or len(moments) != len(self.levels):
            got = 0 if moments is None else len(moments)
            raise PreconditionError(f"{self.name}: expected moments for {len(self.levels)} levels, got {got}")

        reads = {"positions": positions}
        for index, level_moments in enumerate(moments):
            for channel in self._channels():
                reads[f"moments[{index}].{channel}"] = (
                    None if level_moments is None else getattr(level_moments, channel)
                )
        writes = dict(self._packed)
        writes["force"] = self.force

        with self.context.dispatch(self.name, reads=reads, writes=writes):
            for index, level_moments in enumerate(moments):
                start = int(self.offsets[index])
                cells = self.levels[index].num_cells
                for channel in self._channels():
                    source = getattr(level_moments, channel)
                    if source.shape[0] != cells:
                        raise PreconditionError(
                            f"{self.name}: level {index} {channel} has {source.shape[0]} cells, expected {cells}"
                        )
                    self._packed[channel].data[start:start + cells] = source.data
            self._launch(positions)

        self.render_count += 1
        return self.force

    def _launch(self, positions: Buffer) -> None:
        xp = self.context.xp
        p = positions.data
        own0, inside = cell_coordinates(xp, p[:, :3], self.bounds, self.levels[0].resolution)

        a0 = self._packed["a0"].data
        empty4 = xp.zeros((0, 4), dtype=xp.float32)
        a1 = self._packed["a1"].data if self.quadrupole else empty4
        a2 = self._packed["a2"].data if self.quadrupole else empty4
        occ = self._packed["occupancy"].data if self.use_occupancy_mask else xp.zeros(0, dtype=xp.int32)
        eps2 = self.softening * self.softening

        if self._function is None:
            _traverse_kernel(
                p, own0, inside, a0, a1, a2, occ,
                self.offsets, self.resolutions,
                self.bounds.min, self.bounds.extent,
                self.theta, self.gravity_strength, eps2, self.radius,
                self.quadrupole, self.use_occupancy_mask, self.force.data,
            )
            return

        bounds = xp.asarray(np.concatenate([self.bounds.min, self.bounds.extent]), dtype=xp.float64)
        n = self.particle_count
        blocks = (n + THREADS_PER_BLOCK - 1) // THREADS_PER_BLOCK
        self._function(
            (blocks,), (THREADS_PER_BLOCK,),
            (
                p, own0, inside.astype(xp.int32), a0, a1, a2, occ,
                self._level_info.data, np.int32(len(self.levels)), bounds,
                np.float64(self.theta), np.float64(self.gravity_strength), np.float64(eps2),
                np.int32(self.radius), np.int32(self.quadrupole), np.int32(self.use_occupancy_mask),
                self.force.data, np.int32(n),
            ),
        )

    def snapshot(self) -> dict:
        state = super().snapshot()
        state.update(
            particle_count=self.particle_count,
            levels=self.resolutions.tolist(),
            theta=self.theta,
            gravity_strength=self.gravity_strength,
            softening=self.softening,
            radius=self.radius,
            quadrupole=self.quadrupole,
        )
        return state


class QuadrupoleTraversal(Traversal):
    """Traversal with the quadrupole correction from the ``a1``/``a2`` channels."""

    name = "traverse_quadrupole"
    quadrupole = True
