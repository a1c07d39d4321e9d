"""
Explicit compute context for the octree gravity kernels.

Every kernel receives a :class:`ComputeContext` instead of relying on ambient
device state. The context owns the array module (NumPy on the host, CuPy on an
NVIDIA GPU), tracks every buffer it hands out so teardown can be verified, and
brackets each kernel launch in a scoped :meth:`ComputeContext.dispatch` that
checks the launch's inputs are bound and releases the bindings afterwards.

Resource slots use an explicit tagged variant: a kernel output is either
``Owned(initial)`` (the kernel allocates and later frees it) or
``Borrowed(buffer)`` (the caller keeps ownership). The variant is resolved once
at construction by :func:`resolve_slot`.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple, Union
import logging
import warnings

import numpy as np

from octree_gravity.core.errors import (
    CapabilityError,
    ConstructionError,
    DisposedError,
    KernelCompileError,
    PreconditionError,
)

try:
    import cupy as cp
    import cupyx
except ImportError:
    cp = None
    cupyx = None

HAS_CUDA = False
if cp is not None:
    try:
        HAS_CUDA = cp.cuda.runtime.getDeviceCount() > 0
    except cp.cuda.runtime.CUDARuntimeError:
        HAS_CUDA = False

logger = logging.getLogger(__name__)

VALID_BACKENDS = ("auto", "cpu", "cuda")
DEFAULT_MAX_TEXTURE_SIZE = 4096


@dataclass(frozen=True)
class Capabilities:
    """Hardware features the kernels depend on."""

    float_blend: bool = True
    float_render_targets: bool = True
    max_texture_size: int = DEFAULT_MAX_TEXTURE_SIZE

    @property
    def max_elements(self) -> int:
        """Largest element count a single 2-D buffer can hold."""
        return self.max_texture_size * self.max_texture_size


@dataclass(eq=False)
class Buffer:
    """
    Handle to one device array registered with a :class:`ComputeContext`.

    Attributes
    ----------
    name : str
        Human readable name, used in error messages and pipeline graphs.
    data : array
        The NumPy or CuPy array.
    owner : str or None
        Label of the component that allocated the buffer.
    """

    name: str
    data: Any
    owner: Optional[str] = None
    released: bool = False
    _context: Optional["ComputeContext"] = field(default=None, repr=False)

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(self.data.shape)

    @property
    def dtype(self):
        return self.data.dtype

    def host(self) -> np.ndarray:
        """Synchronous read-back of the buffer contents."""
        if self.released:
            raise DisposedError(f"Buffer '{self.name}' was released")
        if self._context is None:
            return np.asarray(self.data)
        return self._context.read_back(self)


@dataclass(frozen=True)
class Owned:
    """Slot variant: the component allocates (and frees) the buffer.

    ``initial`` optionally provides host data to upload; otherwise the buffer
    is filled with ``fill``.
    """

    initial: Optional[Any] = None
    fill: float = 0.0


@dataclass(frozen=True)
class Borrowed:
    """Slot variant: the caller supplies an existing buffer and keeps it."""

    buffer: Buffer


Slot = Union[Owned, Borrowed]


class ComputeContext:
    """
    Data-parallel compute backend with explicit resource tracking.

    Parameters
    ----------
    backend : {"auto", "cpu", "cuda"}
        ``"auto"`` selects CUDA when a device is available.
    float_blend : bool, optional
        Whether additive accumulation in 32-bit floats is available. Defaults
        to True for both backends; passing False emulates hardware without
        float blending and makes the aggregator fall back to half precision.
    float_render_targets : bool
        Whether 32-bit float outputs are supported. Its absence is fatal.
    max_texture_size : int
        Edge length of the largest 2-D buffer; bounds the particle capacity.

    Raises
    ------
    CapabilityError
        If CUDA is requested but unavailable, or float render targets are
        reported missing.
    """

    def __init__(
        self,
        backend: str = "auto",
        float_blend: Optional[bool] = None,
        float_render_targets: bool = True,
        max_texture_size: int = DEFAULT_MAX_TEXTURE_SIZE,
    ):
        if backend not in VALID_BACKENDS:
            raise ConstructionError(
                f"backend must be one of {VALID_BACKENDS}, got '{backend}'"
            )
        if backend == "auto":
            backend = "cuda" if HAS_CUDA else "cpu"
        if backend == "cuda" and not HAS_CUDA:
            raise CapabilityError("CUDA backend requested but no CUDA device/CuPy is available")
        if not float_render_targets:
            raise CapabilityError(
                "Float render targets are not supported by this device; "
                "moment accumulation requires 32-bit float outputs"
            )
        if max_texture_size < 1:
            raise ConstructionError(f"max_texture_size must be positive, got {max_texture_size}")

        self.backend = backend
        self.xp = cp if backend == "cuda" else np
        self.capabilities = Capabilities(
            float_blend=True if float_blend is None else bool(float_blend),
            float_render_targets=True,
            max_texture_size=int(max_texture_size),
        )

        self._live: Dict[int, Buffer] = {}
        self._modules: Dict[str, Any] = {}
        self._bound: Dict[int, str] = {}
        self._active_dispatch: Optional[str] = None
        self.dispatch_count = 0
        self.closed = False

        logger.debug("ComputeContext created (backend=%s, %s)", self.backend, self.capabilities)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_gpu(self) -> bool:
        return self.backend == "cuda"

    @property
    def live_resources(self) -> int:
        """Number of buffers allocated through this context and not yet released."""
        return len(self._live)

    @property
    def max_particles(self) -> int:
        return self.capabilities.max_elements

    def check_capacity(self, particle_count: int, owner: str = "kernel") -> int:
        """
        Validate a particle count against the 2-D storage capacity.

        Raises
        ------
        ConstructionError
            If the count is not positive or exceeds ``max_particles``.
        """
        if int(particle_count) != particle_count or particle_count < 1:
            raise ConstructionError(f"{owner}: particle count must be a positive integer, got {particle_count}")
        if particle_count > self.max_particles:
            raise ConstructionError(
                f"{owner}: {particle_count} particles exceed the storage capacity of "
                f"{self.max_particles} ({self.capabilities.max_texture_size}^2)"
            )
        return int(particle_count)

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    def _check_open(self) -> None:
        if self.closed:
            raise DisposedError("ComputeContext has been closed")

    def allocate(
        self,
        name: str,
        shape: Tuple[int, ...],
        dtype=np.float32,
        fill: float = 0.0,
        owner: Optional[str] = None,
    ) -> Buffer:
        """Allocate a device buffer filled with ``fill``."""
        self._check_open()
        data = self.xp.full(shape, fill, dtype=dtype)
        return self._register(Buffer(name=name, data=data, owner=owner, _context=self))

    def upload(
        self,
        name: str,
        host_array,
        dtype=np.float32,
        owner: Optional[str] = None,
    ) -> Buffer:
        """Copy host data into a new device buffer."""
        self._check_open()
        data = self.xp.array(np.asarray(host_array), dtype=dtype, copy=True)
        return self._register(Buffer(name=name, data=data, owner=owner, _context=self))

    def _register(self, buffer: Buffer) -> Buffer:
        self._live[id(buffer)] = buffer
        return buffer

    def release(self, buffer: Optional[Buffer]) -> None:
        """Free a buffer. Releasing twice (or releasing None) is a no-op."""
        if buffer is None or buffer.released:
            return
        self._live.pop(id(buffer), None)
        buffer.released = True
        buffer.data = None

    def close(self) -> None:
        """Release every live buffer and compiled module. Idempotent."""
        if self.closed:
            return
        for buffer in list(self._live.values()):
            self.release(buffer)
        self._modules.clear()
        self.closed = True
        logger.debug("ComputeContext closed")

    def __enter__(self) -> "ComputeContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Data movement and accumulation
    # ------------------------------------------------------------------

    def asarray(self, host_array, dtype=np.float32):
        return self.xp.asarray(host_array, dtype=dtype)

    def synchronize(self) -> None:
        """Wait for all queued device work (a full pipeline flush)."""
        if self.is_gpu:
            cp.cuda.Stream.null.synchronize()

    def read_back(self, source, out: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Synchronous copy of a buffer (or raw array) to host memory.

        Parameters
        ----------
        source : Buffer or array
        out : np.ndarray, optional
            Pre-allocated host destination; avoids per-call allocation.
        """
        data = source.data if isinstance(source, Buffer) else source
        if isinstance(source, Buffer) and source.released:
            raise DisposedError(f"Buffer '{source.name}' was released")
        self.synchronize()
        host = cp.asnumpy(data) if self.is_gpu else np.asarray(data)
        if out is None:
            return host.copy() if host is data else host
        out[...] = host.reshape(out.shape)
        return out

    def scatter_add(self, target, indices, values) -> None:
        """
        Accumulate ``values`` into ``target[indices]``; duplicates all add.

        On the CPU this is ``numpy.add.at`` (serialized, order independent up
        to rounding); on the GPU ``cupyx.scatter_add`` uses atomic adds.
        """
        if self.is_gpu:
            cupyx.scatter_add(target, indices, values)
        else:
            np.add.at(target, indices, values)

    # ------------------------------------------------------------------
    # Kernel compilation and dispatch
    # ------------------------------------------------------------------

    def compile(self, source: str, name: str, options: Tuple[str, ...] = ()):
        """
        Compile (and cache) a CUDA module.

        Raises
        ------
        CapabilityError
            On the CPU backend.
        KernelCompileError
            When NVRTC rejects the source; the compiler log is attached.
        """
        self._check_open()
        if not self.is_gpu:
            raise CapabilityError(f"Cannot compile CUDA module '{name}' on the CPU backend")
        if name in self._modules:
            return self._modules[name]
        try:
            module = cp.RawModule(code=source, options=tuple(options))
            module.compile()
        except cp.cuda.compiler.CompileException as exc:
            raise KernelCompileError(name, exc.get_message()) from exc
        self._modules[name] = module
        return module

    @contextmanager
    def dispatch(
        self,
        label: str,
        reads: Mapping[str, Optional[Buffer]],
        writes: Mapping[str, Optional[Buffer]],
    ) -> Iterator[None]:
        """
        Scoped acquire/release of the buffers used by one kernel launch.

        Raises
        ------
        PreconditionError
            If any required buffer is unbound, if a buffer is both read and
            written by the launch, or if another launch is still active.
        DisposedError
            If a bound buffer was already released.
        """
        self._check_open()
        if self._active_dispatch is not None:
            raise PreconditionError(
                f"{label}: cannot dispatch while '{self._active_dispatch}' is running"
            )

        missing = [key for key, buf in list(reads.items()) + list(writes.items()) if buf is None]
        if missing:
            raise PreconditionError(f"{label}: missing required buffers: {', '.join(missing)}")

        for key, buf in list(reads.items()) + list(writes.items()):
            if buf.released:
                raise DisposedError(f"{label}: buffer '{key}' ({buf.name}) was released")

        read_ids = {id(buf) for buf in reads.values()}
        aliased = [key for key, buf in writes.items() if id(buf) in read_ids]
        if aliased:
            raise PreconditionError(
                f"{label}: buffers both read and written in one dispatch: {', '.join(aliased)}"
            )

        self._active_dispatch = label
        for key, buf in list(reads.items()) + list(writes.items()):
            self._bound[id(buf)] = key
        try:
            yield
        finally:
            self._bound.clear()
            self._active_dispatch = None
            self.dispatch_count += 1

    def is_bound(self, buffer: Buffer) -> bool:
        return id(buffer) in self._bound


def resolve_slot(
    context: ComputeContext,
    slot: Slot,
    name: str,
    shape: Tuple[int, ...],
    dtype=np.float32,
    owner: Optional[str] = None,
) -> Tuple[Buffer, bool]:
    """
    Resolve an ``Owned``/``Borrowed`` slot into a buffer.

    Returns
    -------
    buffer : Buffer
    owned : bool
        True when the caller of ``resolve_slot`` must release the buffer.

    Raises
    ------
    ConstructionError
        If ``slot`` is not a slot variant, or a borrowed buffer's shape does
        not match the expected shape.
    """
    if isinstance(slot, Owned):
        if slot.initial is None:
            return context.allocate(name, shape, dtype=dtype, fill=slot.fill, owner=owner), True
        initial = np.asarray(slot.initial)
        if initial.size != int(np.prod(shape)):
            raise ConstructionError(
                f"{owner or 'slot'}: initial data for '{name}' has {initial.size} elements, "
                f"expected shape {shape}"
            )
        return context.upload(name, initial.reshape(shape), dtype=dtype, owner=owner), True

    if isinstance(slot, Borrowed):
        buffer = slot.buffer
        if buffer.released:
            raise ConstructionError(f"{owner or 'slot'}: borrowed buffer '{buffer.name}' was released")
        if tuple(buffer.shape) != tuple(shape):
            raise ConstructionError(
                f"{owner or 'slot'}: borrowed buffer '{buffer.name}' has shape {buffer.shape}, "
                f"expected {tuple(shape)}"
            )
        if np.dtype(buffer.dtype) != np.dtype(dtype):
            warnings.warn(
                f"{owner or 'slot'}: borrowed buffer '{buffer.name}' has dtype {buffer.dtype}, "
                f"kernel computes in {np.dtype(dtype)}"
            )
        return buffer, False

    raise ConstructionError(
        f"{owner or 'slot'}: '{name}' must be Owned(...) or Borrowed(...), got {slot!r}"
    )
