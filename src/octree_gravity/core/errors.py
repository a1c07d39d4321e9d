"""
Error taxonomy for the octree gravity engine.

Fatal conditions raise immediately and abort the current construction or
``step()`` call; nothing in the engine retries. Soft data problems (a single
particle with NaN position or non-positive mass) never raise: they are
filtered out by masks inside the kernels. Degraded-accuracy conditions are
reported with :class:`DegradedAccuracyWarning` through ``warnings.warn``.
"""


class GravityError(Exception):
    """Base class for all fatal engine errors."""


class ConstructionError(GravityError, ValueError):
    """Raised while wiring a component, before any step runs.

    Examples are a malformed level configuration, a particle count above the
    storage capacity of the compute context, or a pipeline graph with two
    writers for the same buffer.
    """


class CapabilityError(ConstructionError):
    """A required backend capability (e.g. float render targets) is absent."""


class PreconditionError(GravityError, RuntimeError):
    """A kernel was run without one of its required input buffers bound."""


class DisposedError(PreconditionError):
    """A disposed kernel, buffer or context was used again."""


class KernelCompileError(GravityError, RuntimeError):
    """Kernel compilation failed; ``log`` carries the compiler diagnostic."""

    def __init__(self, name: str, log: str):
        super().__init__(f"Kernel '{name}' failed to compile:\n{log}")
        self.name = name
        self.log = log


class DegradedAccuracyWarning(UserWarning):
    """The run continues, but with reduced numerical accuracy."""
