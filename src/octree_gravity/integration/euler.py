"""
Kick-drift Euler integrator for the octree gravity pipeline.

Per valid particle:
    f  <- f clamped to |f| <= max_accel
    v' =  (v + f dt) (1 - damping), clamped to |v'| <= max_speed
    x' =  x + v' dt

The drift uses the updated velocity, so the scheme is the symplectic
(semi-implicit) Euler variant rather than naive explicit Euler. A particle
with any non-finite input, or with mass <= 0, is copied through unchanged.
"""

from typing import Optional
import logging

import numpy as np

from octree_gravity.core.errors import ConstructionError, PreconditionError
from octree_gravity.core.interfaces import Kernel
from octree_gravity.gpu.context import Buffer, ComputeContext

logger = logging.getLogger(__name__)


def _clamp_norm(xp, vectors, limit):
    """Scale rows of ``vectors`` whose Euclidean norm exceeds ``limit``."""
    norm = xp.sqrt(xp.sum(vectors * vectors, axis=1, keepdims=True))
    scale = xp.where(norm > limit, limit / xp.maximum(norm, 1e-30), 1.0)
    return vectors * scale.astype(vectors.dtype)


def suggest_timestep(softening: float, max_accel: float, max_speed: float, factor: float = 0.25) -> float:
    """
    Conservative step size for the clamped dynamics.

    The smaller of the free-fall time across one softening length at the
    acceleration cap and the crossing time of a softening length at the speed
    cap, times a safety ``factor``.
    """
    if softening <= 0:
        raise ValueError(f"softening must be positive, got {softening}")
    t_accel = np.sqrt(softening / max_accel) if max_accel > 0 else np.inf
    t_speed = softening / max_speed if max_speed > 0 else np.inf
    return float(factor * min(t_accel, t_speed))


class KickDriftIntegrator(Kernel):
    """
    Applies one kick-drift step from a force buffer.

    Parameters
    ----------
    context : ComputeContext
    particle_count : int
    dt : float
        Timestep.
    damping : float
        Fraction of velocity removed per step, in [0, 1].
    max_speed : float
        Upper bound on particle speed after the kick.
    max_accel : float
        Upper bound on the magnitude of the applied force.
    """

    name = "integrate"

    def __init__(
        self,
        context: ComputeContext,
        particle_count: int,
        dt: float = 1.0 / 60.0,
        damping: float = 0.0,
        max_speed: float = 2.0,
        max_accel: float = 1.0,
    ):
        super().__init__(context)
        self.particle_count = context.check_capacity(particle_count, self.name)
        if not (np.isfinite(dt) and dt > 0):
            raise ConstructionError(f"{self.name}: dt must be positive, got {dt}")
        if not 0.0 <= damping <= 1.0:
            raise ConstructionError(f"{self.name}: damping must lie in [0, 1], got {damping}")
        if not max_speed > 0:
            raise ConstructionError(f"{self.name}: max_speed must be positive, got {max_speed}")
        if not max_accel > 0:
            raise ConstructionError(f"{self.name}: max_accel must be positive, got {max_accel}")

        self.dt = float(dt)
        self.damping = float(damping)
        self.max_speed = float(max_speed)
        self.max_accel = float(max_accel)
        self.passed_through = 0

    def run(
        self,
        positions: Optional[Buffer],
        velocities: Optional[Buffer],
        force: Optional[Buffer],
        positions_out: Optional[Buffer],
        velocities_out: Optional[Buffer],
    ) -> None:
        """
        Integrate one step from the read buffers into the write buffers.

        Raises
        ------
        PreconditionError
            If a buffer is missing, has the wrong shape, or an output aliases
            an input.
        """
        self._check_alive()
        n = self.particle_count
        for label, buffer in (("positions", positions), ("velocities", velocities),
                              ("positions_out", positions_out), ("velocities_out", velocities_out)):
            self._check_particles(buffer, n, label)
        if force is not None and tuple(force.shape) != (n, 3):
            raise PreconditionError(f"{self.name}: 'force' has shape {force.shape}, expected ({n}, 3)")

        xp = self.context.xp
        with self.context.dispatch(
            self.name,
            reads={"positions": positions, "velocities": velocities, "force": force},
            writes={"positions_out": positions_out, "velocities_out": velocities_out},
        ):
            p = positions.data
            v = velocities.data
            f = force.data

            valid = (
                xp.all(xp.isfinite(p), axis=1)
                & xp.all(xp.isfinite(v[:, :3]), axis=1)
                & xp.all(xp.isfinite(f), axis=1)
                & (p[:, 3] > 0)
            )

            dt = xp.float32(self.dt)
            kick = _clamp_norm(xp, xp.where(valid[:, None], f, 0).astype(xp.float32), self.max_accel)
            new_v = (v[:, :3] + kick * dt) * xp.float32(1.0 - self.damping)
            new_v = _clamp_norm(xp, new_v, self.max_speed)
            new_x = p[:, :3] + new_v * dt

            mask = valid[:, None]
            positions_out.data[:, :3] = xp.where(mask, new_x, p[:, :3])
            velocities_out.data[:, :3] = xp.where(mask, new_v, v[:, :3])
            positions_out.data[:, 3] = p[:, 3]
            velocities_out.data[:, 3] = v[:, 3]

            self.passed_through = n - int(valid.sum())

        self.render_count += 1
        if self.passed_through:
            logger.debug("%s: %d invalid particles passed through", self.name, self.passed_through)

    def snapshot(self) -> dict:
        state = super().snapshot()
        state.update(
            dt=self.dt,
            damping=self.damping,
            max_speed=self.max_speed,
            max_accel=self.max_accel,
            passed_through=self.passed_through,
        )
        return state
