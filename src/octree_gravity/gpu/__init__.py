"""
Compute backend module.

Provides the explicit :class:`ComputeContext` every kernel runs against
(NumPy on the host, CuPy on NVIDIA GPUs) and the CUDA source of the
traversal kernel. CUDA is used only when CuPy is installed and a device
is present.
"""

from .context import (
    HAS_CUDA,
    VALID_BACKENDS,
    Buffer,
    Capabilities,
    ComputeContext,
    Owned,
    Borrowed,
    resolve_slot,
)

__all__ = [
    'HAS_CUDA',
    'VALID_BACKENDS',
    'Buffer',
    'Capabilities',
    'ComputeContext',
    'Owned',
    'Borrowed',
    'resolve_slot',
]
