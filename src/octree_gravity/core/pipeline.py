"""
Named-buffer dependency graph for one simulation step.

Stages declare the buffers they read and write by name. The graph is checked
when it is wired: every buffer has exactly one writer, every read has a
producer (or is declared an external input), and the declared stage order
never reads a buffer before it has been written.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from octree_gravity.core.errors import ConstructionError


@dataclass(frozen=True)
class Stage:
    """One node of the pipeline: a name plus the buffers it reads and writes."""

    name: str
    reads: Tuple[str, ...] = ()
    writes: Tuple[str, ...] = ()
    optional: bool = False


@dataclass
class PipelineGraph:
    """
    Ordered list of stages with a single-writer-per-buffer invariant.

    Parameters
    ----------
    inputs : iterable of str
        Buffers supplied from outside the step (e.g. the active particle state).
    """

    inputs: Tuple[str, ...] = ()
    stages: List[Stage] = field(default_factory=list)
    _writers: Dict[str, str] = field(default_factory=dict, repr=False)

    def add(self, name: str, reads: Iterable[str] = (), writes: Iterable[str] = (), optional: bool = False) -> Stage:
        """
        Append a stage.

        Raises
        ------
        ConstructionError
            On a duplicate stage name, a second writer for a buffer, a write to
            an external input, a stage reading its own output, or a read of a
            buffer nothing earlier produces.
        """
        stage = Stage(name=name, reads=tuple(reads), writes=tuple(writes), optional=optional)

        if any(s.name == name for s in self.stages):
            raise ConstructionError(f"Pipeline already has a stage named '{name}'")

        self_loop = set(stage.reads) & set(stage.writes)
        if self_loop:
            raise ConstructionError(
                f"Stage '{name}' reads and writes the same buffer(s): {sorted(self_loop)}"
            )

        for buffer in stage.writes:
            if buffer in self.inputs:
                raise ConstructionError(f"Stage '{name}' writes external input '{buffer}'")
            if buffer in self._writers:
                raise ConstructionError(
                    f"Buffer '{buffer}' already written by '{self._writers[buffer]}', "
                    f"cannot also be written by '{name}'"
                )

        for buffer in stage.reads:
            if buffer not in self.inputs and buffer not in self._writers:
                raise ConstructionError(
                    f"Stage '{name}' reads '{buffer}' but no earlier stage writes it"
                )

        for buffer in stage.writes:
            self._writers[buffer] = name
        self.stages.append(stage)
        return stage

    def writer_of(self, buffer: str) -> Optional[str]:
        if buffer in self.inputs:
            return "<input>"
        return self._writers.get(buffer)

    def readers_of(self, buffer: str) -> List[str]:
        return [s.name for s in self.stages if buffer in s.reads]

    @property
    def buffers(self) -> List[str]:
        return list(self.inputs) + list(self._writers)

    def describe(self) -> str:
        """Multi-line text rendering of the graph, in execution order."""
        lines = [f"inputs: {', '.join(self.inputs) or '-'}"]
        for i, stage in enumerate(self.stages):
            tag = " (optional)" if stage.optional else ""
            lines.append(
                f"{i:2d}. {stage.name}{tag}: {', '.join(stage.reads) or '-'} -> {', '.join(stage.writes) or '-'}"
            )
        return "\n".join(lines)
