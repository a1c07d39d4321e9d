"""
Conserved-quantity diagnostics for the gravity engine.

Tracks total mass, centre of mass, linear and angular momentum and kinetic
energy of the valid particles, with a history for drift measurement.

Usage:
    >>> diagnostics = GravityDiagnostics()
    >>> record = diagnostics.compute(positions, velocities)
    >>> diagnostics.append_to_history(step, record)
    >>> diagnostics.drift("centre_of_mass")
"""

from typing import Any, Dict, List, Optional
import numpy as np
import numpy.typing as npt

# Type aliases
NDArrayFloat = npt.NDArray[np.float32]


class GravityDiagnostics:
    """
    Global quantity tracker.

    Attributes
    ----------
    history : List[Dict[str, Any]]
        One record per call to :meth:`append_to_history`.
    """

    def __init__(self):
        self.history: List[Dict[str, Any]] = []

    def compute(self, positions: NDArrayFloat, velocities: NDArrayFloat) -> Dict[str, Any]:
        """
        Compute diagnostics for packed (N, 4) host arrays.

        Invalid particles (non-finite position or velocity, mass <= 0) are
        ignored.

        Returns
        -------
        diagnostics : Dict[str, Any]
            ``total_mass``, ``centre_of_mass`` (3,), ``linear_momentum`` (3,),
            ``angular_momentum`` (3,), ``kinetic_energy``, ``n_valid``,
            ``n_invalid``.
        """
        p = np.asarray(positions, dtype=np.float64)
        v = np.asarray(velocities, dtype=np.float64)
        valid = (
            np.all(np.isfinite(p), axis=1)
            & np.all(np.isfinite(v[:, :3]), axis=1)
            & (p[:, 3] > 0)
        )
        x = p[valid, :3]
        m = p[valid, 3]
        u = v[valid, :3]

        total_mass = float(m.sum())
        if total_mass > 0:
            com = (m[:, None] * x).sum(axis=0) / total_mass
        else:
            com = np.zeros(3)
        momentum = (m[:, None] * u).sum(axis=0)
        angular = (m[:, None] * np.cross(x, u)).sum(axis=0)
        kinetic = float(0.5 * (m * (u * u).sum(axis=1)).sum())

        return {
            "total_mass": total_mass,
            "centre_of_mass": com,
            "linear_momentum": momentum,
            "angular_momentum": angular,
            "kinetic_energy": kinetic,
            "n_valid": int(valid.sum()),
            "n_invalid": int((~valid).sum()),
        }

    def append_to_history(self, step: int, diagnostics: Dict[str, Any]) -> None:
        record = dict(diagnostics)
        record["step"] = int(step)
        self.history.append(record)

    def get_time_series(self, quantity: str) -> np.ndarray:
        """Stack one quantity over the recorded history."""
        if not self.history:
            return np.array([])
        return np.array([record[quantity] for record in self.history])

    def drift(self, quantity: str) -> Optional[float]:
        """Largest deviation of a vector or scalar quantity from its first record."""
        series = self.get_time_series(quantity)
        if series.size == 0:
            return None
        delta = series - series[0]
        if delta.ndim == 1:
            return float(np.max(np.abs(delta)))
        return float(np.max(np.linalg.norm(delta, axis=1)))

    def max_step_change(self, quantity: str) -> Optional[float]:
        """Largest change of a quantity between consecutive records."""
        series = self.get_time_series(quantity)
        if series.shape[0] < 2:
            return None
        delta = np.diff(series, axis=0)
        if delta.ndim == 1:
            return float(np.max(np.abs(delta)))
        return float(np.max(np.linalg.norm(delta, axis=1)))

    def clear(self) -> None:
        self.history.clear()
