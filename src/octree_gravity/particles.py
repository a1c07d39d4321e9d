"""
Host-side particle container for the octree gravity engine.

Particles are stored the way the kernels consume them: positions as
(x, y, z, mass) and velocities as (vx, vy, vz, aux) in float32, both (N, 4).
The ``aux`` channel (e.g. a colour index) is carried along untouched.
"""

from typing import Optional
import numpy as np
import numpy.typing as npt

from octree_gravity.core.errors import ConstructionError

# Type alias for clarity
NDArrayFloat = npt.NDArray[np.float32]


class ParticleSet:
    """
    Container for particle state.

    Parameters
    ----------
    positions : NDArrayFloat, shape (N, 3) or (N, 4)
        Coordinates, optionally with the mass in the fourth column.
    velocities : NDArrayFloat, shape (N, 3) or (N, 4), optional
        Velocities, optionally with the auxiliary channel in the fourth column.
        Zero if omitted.
    masses : NDArrayFloat, shape (N,), optional
        Overrides the fourth position column. Equal masses summing to 1 if
        neither is given.
    aux : NDArrayFloat, shape (N,), optional
        Overrides the fourth velocity column.

    Raises
    ------
    ConstructionError
        If array shapes disagree.
    """

    def __init__(
        self,
        positions: NDArrayFloat,
        velocities: Optional[NDArrayFloat] = None,
        masses: Optional[NDArrayFloat] = None,
        aux: Optional[NDArrayFloat] = None,
    ):
        pos = np.asarray(positions, dtype=np.float32)
        if pos.ndim != 2 or pos.shape[1] not in (3, 4) or pos.shape[0] == 0:
            raise ConstructionError(f"positions must have shape (N, 3) or (N, 4) with N > 0, got {pos.shape}")
        n = pos.shape[0]

        self.positions = np.zeros((n, 4), dtype=np.float32)
        self.positions[:, : pos.shape[1]] = pos
        if pos.shape[1] == 3 and masses is None:
            self.positions[:, 3] = 1.0 / n
        if masses is not None:
            m = np.asarray(masses, dtype=np.float32)
            if m.shape != (n,):
                raise ConstructionError(f"masses must have shape ({n},), got {m.shape}")
            self.positions[:, 3] = m

        self.velocities = np.zeros((n, 4), dtype=np.float32)
        if velocities is not None:
            vel = np.asarray(velocities, dtype=np.float32)
            if vel.ndim != 2 or vel.shape[0] != n or vel.shape[1] not in (3, 4):
                raise ConstructionError(f"velocities must have shape ({n}, 3) or ({n}, 4), got {vel.shape}")
            self.velocities[:, : vel.shape[1]] = vel
        if aux is not None:
            a = np.asarray(aux, dtype=np.float32)
            if a.shape != (n,):
                raise ConstructionError(f"aux must have shape ({n},), got {a.shape}")
            self.velocities[:, 3] = a

    @classmethod
    def from_packed(cls, positions: NDArrayFloat, velocities: NDArrayFloat) -> "ParticleSet":
        """Wrap already packed (N, 4) arrays (copied)."""
        return cls(np.array(positions, dtype=np.float32), np.array(velocities, dtype=np.float32))

    @property
    def n_particles(self) -> int:
        return self.positions.shape[0]

    def __len__(self) -> int:
        return self.n_particles

    @property
    def xyz(self) -> NDArrayFloat:
        return self.positions[:, :3]

    @property
    def masses(self) -> NDArrayFloat:
        return self.positions[:, 3]

    @property
    def vxyz(self) -> NDArrayFloat:
        return self.velocities[:, :3]

    @property
    def aux(self) -> NDArrayFloat:
        return self.velocities[:, 3]

    def valid_mask(self) -> np.ndarray:
        """Particles with finite position and finite, positive mass."""
        return (
            np.all(np.isfinite(self.positions[:, :3]), axis=1)
            & np.isfinite(self.masses)
            & (self.masses > 0)
        )

    def total_mass(self) -> float:
        valid = self.valid_mask()
        return float(np.sum(self.masses[valid], dtype=np.float64))

    def copy(self) -> "ParticleSet":
        return ParticleSet.from_packed(self.positions, self.velocities)

    def __repr__(self) -> str:
        return f"ParticleSet(n_particles={self.n_particles}, total_mass={self.total_mass():.6g})"
