"""
Simulation orchestrator for the octree gravity engine.

This module implements the GravitySystem class that sequences the pipeline
stages once per step:

    (periodic) BoundsReducer -> Aggregator -> PyramidBuilder (per level)
    -> Traversal -> KickDriftIntegrator -> swap particle buffers

Design:
- The system owns only the particle ping-pong buffers and the host storage
  the bounds are read back into; every stage owns its own outputs
- Stages are wired once, and the named-buffer graph is validated at
  construction
- Monopole and quadrupole variants are selected by configuration
"""

from typing import Any, Dict, List, Optional, Tuple
from dataclasses import dataclass, field
import logging
import math
import time as time_module
import warnings

import numpy as np
from pydantic import BaseModel, Field, field_validator, model_validator, ConfigDict

from octree_gravity.core.diagnostics import GravityDiagnostics
from octree_gravity.core.errors import ConstructionError, DisposedError
from octree_gravity.core.pipeline import PipelineGraph
from octree_gravity.gpu.context import VALID_BACKENDS, ComputeContext
from octree_gravity.integration.euler import KickDriftIntegrator
from octree_gravity.multipole.aggregation import Aggregator, QuadrupoleAggregator
from octree_gravity.multipole.bounds import BoundsReducer
from octree_gravity.multipole.levels import (
    DEFAULT_LEVELS_MONOPOLE,
    DEFAULT_LEVELS_QUADRUPOLE,
    DEFAULT_WORLD_MAX,
    DEFAULT_WORLD_MIN,
    MAX_LEVELS_MONOPOLE,
    MAX_LEVELS_QUADRUPOLE,
    VoxelMoments,
    WorldBounds,
    build_levels,
    check_level_count,
)
from octree_gravity.multipole.pyramid import PyramidBuilder
from octree_gravity.multipole.traversal import QuadrupoleTraversal, Traversal
from octree_gravity.particles import ParticleSet

logger = logging.getLogger(__name__)


class GravityConfig(BaseModel):
    """
    Configuration for the gravity engine with Pydantic validation.

    Attributes
    ----------
    theta : float
        Opening angle of the acceptance criterion.
    gravity_strength : float
        Gravitational constant G in code units.
    softening : float
        Plummer softening length.
    multipole_order : str
        "monopole" or "quadrupole".
    num_levels : int, optional
        Pyramid depth; defaults to 7 (monopole) or 4 (quadrupole).
    base_grid_resolution : int
        Cells per axis of the finest level.
    bounds_update_interval : int
        Steps between world-bounds reductions.
    neighbourhood_radius : int, optional
        Traversal scan radius in cells; defaults to ``ceil(1/theta) + 1``.
    """

    # Problem size
    particle_count: Optional[int] = Field(
        default=None,
        gt=0,
        description="Expected particle count; checked against the supplied particles"
    )

    # Physics
    theta: float = Field(default=0.5, gt=0.0, description="Opening angle")
    gravity_strength: float = Field(default=3e-4, description="Gravitational constant G")
    softening: float = Field(default=0.2, ge=0.0, description="Plummer softening length")

    # Integration
    dt: float = Field(default=1.0 / 60.0, gt=0.0, description="Timestep")
    damping: float = Field(default=0.0, ge=0.0, le=1.0, description="Velocity damping per step")
    max_speed: float = Field(default=2.0, gt=0.0, description="Speed clamp")
    max_accel: float = Field(default=1.0, gt=0.0, description="Acceleration clamp")

    # Octree
    multipole_order: str = Field(default="monopole", description="Multipole expansion order")
    num_levels: Optional[int] = Field(default=None, ge=1, description="Number of pyramid levels")
    base_grid_resolution: int = Field(default=64, gt=0, description="Finest-level cells per axis")
    neighbourhood_radius: Optional[int] = Field(
        default=None,
        ge=1,
        description="Traversal scan radius in cells"
    )
    use_occupancy_mask: bool = Field(
        default=False,
        description="Skip empty cells via occupancy counts (quadrupole only)"
    )

    # Bounds
    world_min: Tuple[float, float, float] = Field(default=DEFAULT_WORLD_MIN, description="Initial world minimum")
    world_max: Tuple[float, float, float] = Field(default=DEFAULT_WORLD_MAX, description="Initial world maximum")
    bounds_update_interval: int = Field(default=90, ge=1, description="Steps between bounds reductions")
    bounds_margin: float = Field(default=0.1, ge=0.0, description="Padding around reduced bounds")

    # Backend
    backend: str = Field(default="auto", description="Compute backend")
    float_blend: Optional[bool] = Field(
        default=None,
        description="Override float-blend capability (False forces half precision)"
    )
    max_texture_size: int = Field(default=4096, gt=0, description="Largest 2-D buffer edge")

    # Misc
    verbose: bool = Field(
        default=True,
        description="Enable verbose logging"
    )
    log_interval: int = Field(default=100, ge=1, description="Steps between progress lines in run()")

    model_config = ConfigDict(
        validate_assignment=True,
        extra="forbid",  # Raise error on unknown fields
    )

    @field_validator('multipole_order')
    @classmethod
    def validate_multipole_order(cls, v: str) -> str:
        """Validate multipole order."""
        valid_orders = ["monopole", "quadrupole"]
        if v not in valid_orders:
            raise ValueError(f"multipole_order must be one of {valid_orders}, got '{v}'")
        return v

    @field_validator('backend')
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Validate backend name."""
        if v not in VALID_BACKENDS:
            raise ValueError(f"backend must be one of {list(VALID_BACKENDS)}, got '{v}'")
        return v

    @model_validator(mode='after')
    def validate_configuration_consistency(self):
        """
        Cross-field validation.

        1. world_max must exceed world_min on every axis
        2. num_levels defaults by order and is capped by order
        3. the occupancy mask needs quadrupole moments
        4. levels past resolution 1 are redundant
        """
        if any(hi <= lo for lo, hi in zip(self.world_min, self.world_max)):
            raise ValueError(
                f"world_max {self.world_max} must exceed world_min {self.world_min} on every axis"
            )

        quadrupole = self.multipole_order == "quadrupole"
        if self.num_levels is None:
            default = DEFAULT_LEVELS_QUADRUPOLE if quadrupole else DEFAULT_LEVELS_MONOPOLE
            object.__setattr__(self, 'num_levels', default)

        cap = MAX_LEVELS_QUADRUPOLE if quadrupole else MAX_LEVELS_MONOPOLE
        if self.num_levels > cap:
            raise ValueError(
                f"{self.multipole_order} pyramid supports at most {cap} levels, got num_levels={self.num_levels}"
            )

        if self.use_occupancy_mask and not quadrupole:
            raise ValueError("use_occupancy_mask requires multipole_order='quadrupole'")

        useful = int(math.floor(math.log2(self.base_grid_resolution))) + 1
        if self.num_levels > useful:
            warnings.warn(
                f"num_levels={self.num_levels} exceeds the {useful} distinct levels of a "
                f"{self.base_grid_resolution}^3 grid; the extra levels repeat resolution 1."
            )

        return self

    @property
    def is_quadrupole(self) -> bool:
        return self.multipole_order == "quadrupole"


@dataclass
class SystemState:
    """
    Current state of the gravity system.
    """
    step: int = 0
    time: float = 0.0

    # Bounds bookkeeping
    last_bounds_update_step: int = 0
    bounds_updates: int = 0

    # Active ping-pong slot (0 or 1)
    active: int = 0

    # Timing diagnostics (last step, seconds)
    timing_bounds: float = 0.0
    timing_aggregate: float = 0.0
    timing_pyramid: float = 0.0
    timing_traversal: float = 0.0
    timing_integration: float = 0.0
    timing_total: float = 0.0

    # Timing
    wall_time_start: float = field(default_factory=time_module.time)
    wall_time_elapsed: float = 0.0


class GravitySystem:
    """
    Octree gravity engine: owns particle state and sequences the stages.

    Parameters
    ----------
    particles : ParticleSet
        Initial particle state (copied to the compute device).
    config : GravityConfig, optional
        Defaults to ``GravityConfig()``.
    context : ComputeContext, optional
        Shared compute context. When omitted the system creates one from the
        configuration and closes it in :meth:`dispose`.

    Raises
    ------
    ConstructionError
        For a particle count mismatch, a count above the context capacity, or
        a malformed level configuration.
    """

    def __init__(
        self,
        particles: ParticleSet,
        config: Optional[GravityConfig] = None,
        context: Optional[ComputeContext] = None,
    ):
        self.config = config if config is not None else GravityConfig()
        self.state = SystemState()
        self.diagnostics = GravityDiagnostics()
        self._disposed = False

        n = particles.n_particles
        if self.config.particle_count is not None and self.config.particle_count != n:
            raise ConstructionError(
                f"config.particle_count={self.config.particle_count} but {n} particles were supplied"
            )

        self._owns_context = context is None
        if context is None:
            context = ComputeContext(
                backend=self.config.backend,
                float_blend=self.config.float_blend,
                max_texture_size=self.config.max_texture_size,
            )
        self.context = context

        try:
            self._build(particles)
        except Exception:
            self.dispose()
            raise

        self._log(f"Initialized {self.config.multipole_order} gravity system")
        self._log(f"  Particles: {self.n_particles}")
        self._log(f"  Backend: {self.context.backend}")
        self._log(f"  Levels: {[level.resolution for level in self.levels]}")

    def _build(self, particles: ParticleSet) -> None:
        config = self.config
        context = self.context
        n = context.check_capacity(particles.n_particles, "GravitySystem")
        self.n_particles = n

        check_level_count(config.num_levels, config.is_quadrupole)
        self.levels = build_levels(config.base_grid_resolution, config.num_levels)
        self.bounds = WorldBounds(config.world_min, config.world_max)

        # System-owned storage: particle ping-pong buffers and bounds read-back
        self._positions = [
            context.upload("positions[0]", particles.positions, owner="system"),
            context.upload("positions[1]", particles.positions, owner="system"),
        ]
        self._velocities = [
            context.upload("velocities[0]", particles.velocities, owner="system"),
            context.upload("velocities[1]", particles.velocities, owner="system"),
        ]
        self._bounds_readback = np.zeros(6, dtype=np.float32)

        self.bounds_reducer = BoundsReducer(
            context, n, self.bounds, margin=config.bounds_margin, readback=self._bounds_readback
        )
        aggregator_cls = QuadrupoleAggregator if config.is_quadrupole else Aggregator
        self.aggregator = aggregator_cls(context, n, self.levels[0], self.bounds)
        self.pyramid = PyramidBuilder(context, self.levels, quadrupole=config.is_quadrupole)
        traversal_cls = QuadrupoleTraversal if config.is_quadrupole else Traversal
        self.traversal = traversal_cls(
            context, n, self.levels, self.bounds,
            theta=config.theta,
            gravity_strength=config.gravity_strength,
            softening=config.softening,
            neighbourhood_radius=config.neighbourhood_radius,
            use_occupancy_mask=config.use_occupancy_mask,
        )
        self.integrator = KickDriftIntegrator(
            context, n,
            dt=config.dt,
            damping=config.damping,
            max_speed=config.max_speed,
            max_accel=config.max_accel,
        )
        self.graph = self._wire()

        # The first step reduces the bounds.
        self.state.last_bounds_update_step = -config.bounds_update_interval
        self._moments: List[VoxelMoments] = []

    def _wire(self) -> PipelineGraph:
        graph = PipelineGraph(inputs=("positions", "velocities"))
        graph.add(self.bounds_reducer.name, reads=["positions"], writes=["world_bounds"], optional=True)
        graph.add(self.aggregator.name, reads=["positions", "world_bounds"], writes=["moments[0]"])
        for level in self.levels[1:]:
            graph.add(
                f"{self.pyramid.name}[{level.index}]",
                reads=[f"moments[{level.index - 1}]"],
                writes=[f"moments[{level.index}]"],
            )
        graph.add(
            self.traversal.name,
            reads=["positions", "world_bounds"] + [f"moments[{level.index}]" for level in self.levels],
            writes=["force"],
        )
        graph.add(
            self.integrator.name,
            reads=["positions", "velocities", "force"],
            writes=["positions_next", "velocities_next"],
        )
        return graph

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def kernels(self) -> list:
        return [
            getattr(self, name)
            for name in ("bounds_reducer", "aggregator", "pyramid", "traversal", "integrator")
            if getattr(self, name, None) is not None
        ]

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def positions(self) -> np.ndarray:
        """Host copy of the active (N, 4) position buffer."""
        self._check_alive()
        return self._positions[self.state.active].host()

    @property
    def velocities(self) -> np.ndarray:
        """Host copy of the active (N, 4) velocity buffer."""
        self._check_alive()
        return self._velocities[self.state.active].host()

    @property
    def force(self) -> np.ndarray:
        """Host copy of the forces computed by the last step."""
        self._check_alive()
        return self.traversal.force.host()

    @property
    def moments(self) -> List[VoxelMoments]:
        """Pyramid built by the last step, level 0 first."""
        return list(self._moments)

    def _check_alive(self) -> None:
        if self._disposed:
            raise DisposedError("GravitySystem has been disposed")

    def _log(self, message: str):
        """Log message if verbose."""
        if self.config.verbose:
            logger.info("[step %6d] %s", self.state.step, message)

    # ------------------------------------------------------------------
    # Stepping
    # ------------------------------------------------------------------

    def update_bounds(self) -> WorldBounds:
        """Reduce the active positions into the world bounds now."""
        self._check_alive()
        bounds = self.bounds_reducer.run(self._positions[self.state.active])
        self.state.last_bounds_update_step = self.state.step
        self.state.bounds_updates += 1
        return bounds

    def compute_forces(self) -> np.ndarray:
        """
        Aggregate, build the pyramid and traverse without integrating.

        Returns
        -------
        np.ndarray, shape (N, 3)
        """
        self._check_alive()
        positions = self._positions[self.state.active]
        base = self.aggregator.run(positions)
        self._moments = self.pyramid.run(base)
        return self.traversal.run(positions, self._moments).host()

    def step(self) -> None:
        """
        Advance the system by one timestep.

        Raises
        ------
        DisposedError
            If the system was disposed.
        """
        self._check_alive()
        state = self.state
        t_start = time_module.perf_counter()
        active = state.active
        inactive = 1 - active

        t0 = time_module.perf_counter()
        if state.step - state.last_bounds_update_step >= self.config.bounds_update_interval:
            self.update_bounds()
            self._log(f"World bounds updated: {self.bounds}")
        state.timing_bounds = time_module.perf_counter() - t0

        t0 = time_module.perf_counter()
        base = self.aggregator.run(self._positions[active])
        state.timing_aggregate = time_module.perf_counter() - t0

        t0 = time_module.perf_counter()
        self._moments = self.pyramid.run(base)
        state.timing_pyramid = time_module.perf_counter() - t0

        t0 = time_module.perf_counter()
        force = self.traversal.run(self._positions[active], self._moments)
        state.timing_traversal = time_module.perf_counter() - t0

        t0 = time_module.perf_counter()
        self.integrator.run(
            self._positions[active],
            self._velocities[active],
            force,
            self._positions[inactive],
            self._velocities[inactive],
        )
        state.timing_integration = time_module.perf_counter() - t0

        state.active = inactive
        state.step += 1
        state.time += self.config.dt
        state.timing_total = time_module.perf_counter() - t_start

    def run(self, n_steps: int, record_diagnostics: bool = False) -> SystemState:
        """
        Run ``n_steps`` steps.

        Parameters
        ----------
        n_steps : int
        record_diagnostics : bool
            Append conserved quantities to ``self.diagnostics`` before the
            first step and after every step.
        """
        self._check_alive()
        if n_steps < 0:
            raise ValueError(f"n_steps must be >= 0, got {n_steps}")

        if record_diagnostics:
            self.record_diagnostics()

        for _ in range(int(n_steps)):
            self.step()
            if record_diagnostics:
                self.record_diagnostics()
            if self.state.step % self.config.log_interval == 0:
                self._log(
                    f"t={self.state.time:.4f}  "
                    f"step time={self.state.timing_total * 1e3:.2f} ms  "
                    f"traversal={self.state.timing_traversal * 1e3:.2f} ms"
                )

        self.state.wall_time_elapsed = time_module.time() - self.state.wall_time_start
        return self.state

    def record_diagnostics(self) -> Dict[str, Any]:
        record = self.diagnostics.compute(self.positions, self.velocities)
        self.diagnostics.append_to_history(self.state.step, record)
        return record

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def bounds_snapshot(self) -> WorldBounds:
        """Copy of the current world bounds."""
        return self.bounds.copy()

    def snapshot(self) -> Dict[str, Any]:
        """State capture of the system and every stage, for debugging."""
        return {
            "step": self.state.step,
            "time": self.state.time,
            "active": self.state.active,
            "bounds": self.bounds.snapshot(),
            "bounds_updates": self.state.bounds_updates,
            "dispatch_count": self.context.dispatch_count,
            "pipeline": self.graph.describe(),
            "kernels": {kernel.name: kernel.snapshot() for kernel in self.kernels},
        }

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def dispose(self) -> None:
        """Release every stage and particle buffer. Safe to call twice."""
        if self._disposed:
            return
        for kernel in self.kernels:
            kernel.dispose()
        for buffer in getattr(self, "_positions", []) + getattr(self, "_velocities", []):
            self.context.release(buffer)
        self._moments = []
        if self._owns_context:
            self.context.close()
        self._disposed = True
        logger.debug("GravitySystem disposed")

    def __enter__(self) -> "GravitySystem":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()
