"""
Pipeline Assembly Module for the IdePix pipeline

This module provides components for building, validating and running
processing pipeline DAGs (Directed Acyclic Graphs).

Components:
- graph: Pipeline graph of inputs, stage nodes and slot bindings
- validator: Pre-execution validation
- assembler: Pipeline construction from specifications
- pipeline: Execution and final-product assembly

Usage:
    from idepix.analysis.assembly import PipelineAssembler, PipelineSpec

    spec = PipelineSpec.from_yaml("my_pipeline.yaml")
    pipeline = PipelineAssembler(registry).assemble(spec)
    product = pipeline.run({"source": l1b})
"""

from idepix.analysis.assembly.graph import (
    # Core graph structures
    PipelineGraph,
    PipelineInput,
    StageNode,
    # Enums
    PipelineState,
    StageStatus,
)

from idepix.analysis.assembly.validator import (
    PipelineValidator,
    ValidationCategory,
    ValidationIssue,
    ValidationResult,
    ValidationSeverity,
)

from idepix.analysis.assembly.pipeline import (
    PROCESSING_GRAPH_KEY,
    Pipeline,
)

from idepix.analysis.assembly.assembler import (
    InputSpec,
    PipelineAssembler,
    PipelineSpec,
    StepSpec,
    TargetSpec,
    VirtualBandSpec,
)

__all__ = [
    # Graph
    "PipelineGraph",
    "PipelineInput",
    "StageNode",
    "PipelineState",
    "StageStatus",
    # Validator
    "PipelineValidator",
    "ValidationCategory",
    "ValidationIssue",
    "ValidationResult",
    "ValidationSeverity",
    # Pipeline
    "PROCESSING_GRAPH_KEY",
    "Pipeline",
    # Assembler
    "InputSpec",
    "PipelineAssembler",
    "PipelineSpec",
    "StepSpec",
    "TargetSpec",
    "VirtualBandSpec",
]
