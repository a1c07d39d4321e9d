"""
Abstract base classes for the pluggable stages of the gravity pipeline.

Every stage (bounds reduction, aggregation, pyramid building, traversal,
integration) is a :class:`Kernel`: it is wired once against a
:class:`~octree_gravity.gpu.context.ComputeContext`, runs any number of times,
and is disposed exactly once. Stages own the output storage they allocate and
never free storage they borrowed.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List

from octree_gravity.core.errors import DisposedError, PreconditionError


class Kernel(ABC):
    """
    Abstract base class for one pipeline stage.

    Subclasses register the buffers they allocate in ``self._owned`` so the
    default :meth:`dispose` can release them.
    """

    #: Stage label used in dispatch scopes, logs and pipeline graphs.
    name: str = "kernel"

    def __init__(self, context):
        self.context = context
        self.render_count = 0
        self._owned: List[Any] = []
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def _check_alive(self) -> None:
        if self._disposed:
            raise DisposedError(f"{self.name}: kernel has been disposed")

    def _check_particles(self, buffer, particle_count: int, label: str) -> None:
        """Reject a bound particle buffer whose shape does not match the wiring."""
        if buffer is not None and tuple(buffer.shape) != (particle_count, 4):
            raise PreconditionError(
                f"{self.name}: '{label}' has shape {buffer.shape}, expected ({particle_count}, 4)"
            )

    def _own(self, buffer, owned: bool = True):
        """Track a buffer for release in :meth:`dispose` when ``owned``."""
        if owned:
            self._owned.append(buffer)
        return buffer

    @abstractmethod
    def run(self, *args, **kwargs) -> Any:
        """
        Execute the stage once.

        Raises
        ------
        PreconditionError
            If a required input buffer is not bound.
        DisposedError
            If the kernel was already disposed.
        """
        pass

    def dispose(self) -> None:
        """Release owned buffers. Safe to call more than once."""
        if self._disposed:
            return
        for buffer in self._owned:
            self.context.release(buffer)
        self._owned.clear()
        self._disposed = True

    def snapshot(self) -> Dict[str, Any]:
        """Lightweight state capture for debugging."""
        return {
            "kernel": self.name,
            "render_count": self.render_count,
            "owned_buffers": len(self._owned),
            "disposed": self._disposed,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(render_count={self.render_count}, disposed={self._disposed})"

    def __str__(self) -> str:
        return f"{self.name}#{self.render_count}"
