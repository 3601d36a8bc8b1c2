"""
Pipeline Graph Representation for the IdePix pipeline

Provides the directed acyclic graph of a processing pipeline: named
pipeline inputs, stage nodes and the bindings of stage input slots to
pipeline inputs or upstream stages.
"""

import heapq
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Set

from idepix.analysis.library.stage import Stage
from idepix.errors import CycleDetectedError, GraphValidationError

logger = logging.getLogger(__name__)


class StageStatus(Enum):
    """Execution status of a stage node."""
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"


class PipelineState(Enum):
    """Lifecycle states of a pipeline."""
    BUILDING = "building"      # Graph under construction
    VALIDATED = "validated"    # Wiring and definitions checked
    EXECUTING = "executing"    # Stages running
    ASSEMBLED = "assembled"    # Final product available
    FAILED = "failed"          # Terminal failure


@dataclass
class PipelineInput:
    """
    A named external input of the pipeline.

    Attributes:
        name: Input name referenced by stage bindings
        required: Whether the input must be supplied
        description: Human-readable description
    """
    name: str
    required: bool = True
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {"name": self.name, "required": self.required, "description": self.description}


@dataclass
class StageNode:
    """
    A stage instance in the pipeline graph.

    Attributes:
        id: Unique node identifier
        stage: The stage implementation (None for a disabled optional
            stage whose identifier is not registered)
        bindings: Slot name -> pipeline input name or upstream node id
        parameters: Resolved stage parameters
        optional: Whether the stage may be disabled
        enabled: Whether an optional stage runs
        stage_id: Registry identifier of the stage
    """
    id: str
    stage: Optional[Stage]
    bindings: Dict[str, str] = field(default_factory=dict)
    parameters: Dict[str, Any] = field(default_factory=dict)
    optional: bool = False
    enabled: bool = True
    stage_id: Optional[str] = None

    # Execution state
    status: StageStatus = StageStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    error_message: Optional[str] = None

    def __post_init__(self):
        if not self.optional and not self.enabled:
            raise GraphValidationError("Only optional stages can be disabled", stage_id=self.id)
        if self.stage is None and self.active:
            raise GraphValidationError("Only disabled stages may be unresolved", stage_id=self.id)
        if self.stage is not None:
            self.stage_id = self.stage.stage_id

    @property
    def active(self) -> bool:
        """Whether the stage takes part in execution."""
        return self.enabled or not self.optional

    @property
    def label(self) -> str:
        """Display name of the node."""
        if self.stage is not None and self.stage.name:
            return self.stage.name
        return self.id

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get execution duration in seconds."""
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return None

    def mark(self, status: StageStatus, error: Optional[str] = None) -> None:
        """Record a status transition."""
        now = datetime.now(timezone.utc)
        if status == StageStatus.RUNNING:
            self.start_time = now
        elif status in (StageStatus.DONE, StageStatus.FAILED):
            self.end_time = now
        self.status = status
        self.error_message = error

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        result = {
            "id": self.id,
            "stage": self.stage_id,
            "bindings": dict(self.bindings),
            "parameters": dict(self.parameters),
            "optional": self.optional,
            "enabled": self.enabled,
            "status": self.status.value,
        }
        if self.start_time:
            result["start_time"] = self.start_time.isoformat()
        if self.end_time:
            result["end_time"] = self.end_time.isoformat()
        if self.error_message:
            result["error_message"] = self.error_message
        return result


class PipelineGraph:
    """
    Directed Acyclic Graph (DAG) of a processing pipeline.

    Edges are implied by stage bindings: a slot bound to another node's id
    makes that node a predecessor. Bindings to pipeline inputs do not create
    edges.

    Features:
    - Input and stage management
    - Execution order (Kahn's algorithm, ties broken by declaration order)
    - Cycle detection
    - Mermaid export
    """

    def __init__(
        self,
        pipeline_id: str,
        name: str,
        version: str = "1.0.0",
        description: Optional[str] = None,
    ):
        self.id = pipeline_id
        self.name = name
        self.version = version
        self.description = description

        self._inputs: Dict[str, PipelineInput] = {}
        self._nodes: Dict[str, StageNode] = {}
        self._topological_order: Optional[List[str]] = None

        self.metadata: Dict[str, Any] = {}
        self.created_at: datetime = datetime.now(timezone.utc)

        logger.debug(f"Created pipeline graph: {pipeline_id} v{version}")

    # --- Inputs ---

    def add_input(self, pipeline_input: PipelineInput) -> None:
        """
        Add a pipeline input.

        Raises:
            GraphValidationError: If the name is already used
        """
        self._check_name(pipeline_input.name)
        self._inputs[pipeline_input.name] = pipeline_input
        logger.debug(f"Added input: {pipeline_input.name}")

    def get_input(self, name: str) -> Optional[PipelineInput]:
        return self._inputs.get(name)

    @property
    def inputs(self) -> List[PipelineInput]:
        return list(self._inputs.values())

    # --- Stages ---

    def add_stage(self, node: StageNode) -> None:
        """
        Add a stage node.

        Raises:
            GraphValidationError: If the id is already used
        """
        self._check_name(node.id)
        self._nodes[node.id] = node
        self._topological_order = None
        logger.debug(f"Added stage: {node.id} ({node.stage_id})")

    def get_stage(self, node_id: str) -> Optional[StageNode]:
        """Get stage node by ID."""
        return self._nodes.get(node_id)

    @property
    def stages(self) -> List[StageNode]:
        """Stage nodes in declaration order."""
        return list(self._nodes.values())

    @property
    def stage_ids(self) -> List[str]:
        return list(self._nodes)

    def _check_name(self, name: str) -> None:
        if name in self._inputs or name in self._nodes:
            raise GraphValidationError(f"Name '{name}' already exists in graph '{self.id}'")

    def is_empty(self) -> bool:
        """Check if graph has no stages."""
        return not self._nodes

    # --- Dependency Queries ---

    def reference_kind(self, reference: str) -> Optional[str]:
        """'input', 'stage' or None for an unresolved binding target."""
        if reference in self._inputs:
            return "input"
        if reference in self._nodes:
            return "stage"
        return None

    def get_predecessors(self, node_id: str) -> Set[str]:
        """Stage ids bound to the slots of a node."""
        node = self._nodes[node_id]
        return {ref for ref in node.bindings.values() if ref in self._nodes}

    def get_successors(self, node_id: str) -> Set[str]:
        """Stage ids with a slot bound to a node."""
        return {
            other.id for other in self._nodes.values()
            if node_id in other.bindings.values()
        }

    def get_ancestors(self, node_id: str) -> Set[str]:
        """All transitive predecessors of a node."""
        ancestors: Set[str] = set()
        queue = list(self.get_predecessors(node_id))
        while queue:
            current = queue.pop(0)
            if current not in ancestors:
                ancestors.add(current)
                queue.extend(self.get_predecessors(current))
        return ancestors

    # --- Topological Operations ---

    def _topological_sort(self) -> List[str]:
        """
        Compute topological order using Kahn's algorithm.

        Among ready nodes the one declared first runs first.

        Raises:
            CycleDetectedError: If the graph contains a cycle
        """
        if self._topological_order is not None:
            return self._topological_order

        position = {node_id: i for i, node_id in enumerate(self._nodes)}
        in_degree = {node_id: len(self.get_predecessors(node_id)) for node_id in self._nodes}
        successors = {node_id: self.get_successors(node_id) for node_id in self._nodes}

        ready = [(position[n], n) for n, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)
        result = []

        while ready:
            _, node_id = heapq.heappop(ready)
            result.append(node_id)
            for successor in successors[node_id]:
                in_degree[successor] -= 1
                if in_degree[successor] == 0:
                    heapq.heappush(ready, (position[successor], successor))

        if len(result) != len(self._nodes):
            remaining = [n for n in self._nodes if n not in result]
            raise CycleDetectedError(
                f"Graph contains a cycle. Processed {len(result)} of {len(self._nodes)} "
                f"stages; unresolved: {remaining}"
            )

        self._topological_order = result
        return result

    def get_execution_order(self) -> List[str]:
        """
        Get stage ids in execution order (topological order).

        Raises:
            CycleDetectedError: If the graph contains a cycle
        """
        return list(self._topological_sort())

    def iter_stages(self) -> Iterator[StageNode]:
        """Iterate over stage nodes in execution order."""
        for node_id in self.get_execution_order():
            yield self._nodes[node_id]

    def reset(self) -> None:
        """Reset execution state of every node."""
        for node in self._nodes.values():
            node.status = StageStatus.PENDING
            node.start_time = None
            node.end_time = None
            node.error_message = None

    # --- Serialization ---

    def to_dict(self) -> Dict[str, Any]:
        """Convert graph to dictionary representation."""
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "inputs": [i.to_dict() for i in self._inputs.values()],
            "stages": [n.to_dict() for n in self._nodes.values()],
            "metadata": {
                **self.metadata,
                "created_at": self.created_at.isoformat(),
                "num_stages": len(self._nodes),
            },
        }

    def to_mermaid(self) -> str:
        """
        Generate Mermaid diagram representation.

        Returns:
            Mermaid flowchart syntax string
        """
        lines = ["flowchart TD"]

        for pipeline_input in self._inputs.values():
            lines.append(f"    {pipeline_input.name}[/{pipeline_input.name}/]")
        for node in self._nodes.values():
            if node.optional:
                lines.append(f"    {node.id}({node.label})")
            else:
                lines.append(f"    {node.id}[{node.label}]")

        for node in self._nodes.values():
            for slot, reference in node.bindings.items():
                lines.append(f"    {reference} -->|{slot}| {node.id}")

        return "\n".join(lines)

    def __repr__(self) -> str:
        return (
            f"PipelineGraph(id='{self.id}', name='{self.name}', "
            f"inputs={len(self._inputs)}, stages={len(self._nodes)})"
        )
