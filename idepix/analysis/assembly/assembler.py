"""
Pipeline Assembler for the IdePix pipeline

Constructs pipelines from declarative specifications: resolves stage
identifiers against the stage registry, validates parameters and builds
the pipeline graph, the merge plan and the final-product definition.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from idepix.analysis.assembly.graph import PipelineGraph, PipelineInput, StageNode
from idepix.analysis.assembly.pipeline import Pipeline
from idepix.analysis.library.registry import (
    StageRegistry,
    get_global_registry,
    load_default_stages,
)
from idepix.datamodel import BandSpec, SelectionPolicy
from idepix.errors import DefinitionError, GraphValidationError, IdepixError

logger = logging.getLogger(__name__)


@dataclass
class InputSpec:
    """
    Specification for a pipeline input.

    Attributes:
        name: Logical input name for reference in steps
        required: Whether this input must be provided
        description: Human-readable description
    """
    name: str
    required: bool = True
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {"name": self.name, "required": self.required, "description": self.description}


@dataclass
class StepSpec:
    """
    Specification for a pipeline processing step.

    Attributes:
        id: Unique step identifier
        stage: Stage identifier from registry
        inputs: Slot name -> input name or step id
        parameters: Stage parameter overrides
        optional: Whether the step may be disabled
        enabled: Whether an optional step runs
    """
    id: str
    stage: str
    inputs: Dict[str, str] = field(default_factory=dict)
    parameters: Dict[str, Any] = field(default_factory=dict)
    optional: bool = False
    enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "stage": self.stage,
            "inputs": dict(self.inputs),
            "parameters": dict(self.parameters),
            "optional": self.optional,
            "enabled": self.enabled,
        }


@dataclass
class VirtualBandSpec:
    """
    Specification for a virtual band of the final product.

    Attributes:
        name: Band name
        expression: Band-math expression over the merged product
        data_type: Output pixel type
        unit: Physical unit
        description: Human-readable description
        no_data_value: No-data value written for invalid pixels
    """
    name: str
    expression: str
    data_type: str = "float32"
    unit: Optional[str] = None
    description: Optional[str] = None
    no_data_value: Optional[float] = None

    def to_band_spec(self) -> BandSpec:
        return BandSpec(
            self.name,
            self.data_type,
            unit=self.unit,
            description=self.description,
            no_data_value=self.no_data_value,
            no_data_value_used=self.no_data_value is not None,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "expression": self.expression,
            "data_type": self.data_type,
            "unit": self.unit,
            "description": self.description,
            "no_data_value": self.no_data_value,
        }


@dataclass
class TargetSpec:
    """
    Naming and finishing of the final product.

    Attributes:
        name_from: Input whose product name and raster the target takes
        name_suffix: Suffix appended to that name
        product_type: Fixed product type (takes precedence)
        product_type_from: Input or step whose product type the target takes
        auto_grouping: Band grouping pattern
        mask_bands: Flag bands for which one mask per flag is created
        mask_colors: Flag name -> RGB display colour
        mask_transparency: Transparency of the created masks
    """
    name_from: str
    name_suffix: str = ""
    product_type: Optional[str] = None
    product_type_from: Optional[str] = None
    auto_grouping: Optional[str] = None
    mask_bands: List[str] = field(default_factory=list)
    mask_colors: Dict[str, Tuple[int, int, int]] = field(default_factory=dict)
    mask_transparency: float = 0.5

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name_from": self.name_from,
            "name_suffix": self.name_suffix,
            "product_type": self.product_type,
            "product_type_from": self.product_type_from,
            "auto_grouping": self.auto_grouping,
            "mask_bands": list(self.mask_bands),
            "mask_colors": {k: list(v) for k, v in self.mask_colors.items()},
            "mask_transparency": self.mask_transparency,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TargetSpec":
        return cls(
            name_from=data["name_from"],
            name_suffix=data.get("name_suffix", ""),
            product_type=data.get("product_type"),
            product_type_from=data.get("product_type_from"),
            auto_grouping=data.get("auto_grouping"),
            mask_bands=list(data.get("mask_bands", [])),
            mask_colors={k: tuple(v) for k, v in data.get("mask_colors", {}).items()},
            mask_transparency=data.get("mask_transparency", 0.5),
        )


@dataclass
class PipelineSpec:
    """
    Complete pipeline specification.

    Expected format (dict/YAML):
        id: idepix_olci_s3snow
        name: IdePix OLCI S3-SNOW
        inputs:
          - {name: source}
          - {name: dem, required: false}
        steps:
          - id: rad2refl
            stage: idepix.olci.rad2refl
            inputs: {sourceProduct: source}
        merge:
          - {from: rad2refl, bands: [Oa21_reflectance]}
        virtual_bands:
          - {name: ..., expression: ...}
        target:
          name_from: source
          name_suffix: _IDEPIX
    """
    id: str
    name: str
    version: str = "1.0.0"
    description: Optional[str] = None
    inputs: List[InputSpec] = field(default_factory=list)
    steps: List[StepSpec] = field(default_factory=list)
    merge: List[SelectionPolicy] = field(default_factory=list)
    virtual_bands: List[VirtualBandSpec] = field(default_factory=list)
    target: Optional[TargetSpec] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "inputs": [i.to_dict() for i in self.inputs],
            "steps": [s.to_dict() for s in self.steps],
            "merge": [p.to_dict() for p in self.merge],
            "virtual_bands": [v.to_dict() for v in self.virtual_bands],
            "target": self.target.to_dict() if self.target else None,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineSpec":
        """Create from dictionary representation."""
        inputs = [
            InputSpec(
                name=inp["name"],
                required=inp.get("required", True),
                description=inp.get("description"),
            )
            for inp in data.get("inputs", [])
        ]

        steps = [
            StepSpec(
                id=step["id"],
                stage=step["stage"],
                inputs=dict(step.get("inputs", {})),
                parameters=dict(step.get("parameters", {})),
                optional=step.get("optional", False),
                enabled=step.get("enabled", True),
            )
            for step in data.get("steps", [])
        ]

        virtual_bands = [
            VirtualBandSpec(
                name=vb["name"],
                expression=vb["expression"],
                data_type=vb.get("data_type", "float32"),
                unit=vb.get("unit"),
                description=vb.get("description"),
                no_data_value=vb.get("no_data_value"),
            )
            for vb in data.get("virtual_bands", [])
        ]

        target = TargetSpec.from_dict(data["target"]) if data.get("target") else None

        return cls(
            id=data["id"],
            name=data["name"],
            version=data.get("version", "1.0.0"),
            description=data.get("description"),
            inputs=inputs,
            steps=steps,
            merge=[SelectionPolicy.from_dict(m) for m in data.get("merge", [])],
            virtual_bands=virtual_bands,
            target=target,
            metadata=data.get("metadata", {}),
        )

    @classmethod
    def from_yaml(cls, yaml_path: Union[str, Path]) -> "PipelineSpec":
        """Load from YAML file."""
        with open(yaml_path, "r") as f:
            data = yaml.safe_load(f)
        return cls.from_dict(data)


class PipelineAssembler:
    """
    Assembles pipelines from specifications.

    Features:
    - Parse pipeline specifications from YAML/dict
    - Resolve stage identifiers from the registry at build time
    - Validate and default stage parameters
    - Check merge sources and target naming references

    Usage:
        assembler = PipelineAssembler(registry)
        pipeline = assembler.assemble(spec)
        product = pipeline.run({"source": l1b})
    """

    def __init__(self, registry: Optional[StageRegistry] = None):
        """
        Initialize pipeline assembler.

        Args:
            registry: Stage registry (uses global if None)
        """
        if registry is None:
            registry = get_global_registry()
            if not registry.stages:
                load_default_stages(registry)

        self.registry = registry
        logger.debug(f"Initialized PipelineAssembler with {len(self.registry.stages)} stages")

    def assemble(self, spec: PipelineSpec) -> Pipeline:
        """
        Assemble a pipeline from specification.

        Args:
            spec: Pipeline specification

        Returns:
            Pipeline in BUILDING state

        Raises:
            GraphValidationError: On unknown stage identifiers, invalid
                parameters or unresolved references
            DefinitionError: On an invalid final-product definition
        """
        logger.info(f"Assembling pipeline: {spec.id} v{spec.version}")

        graph = PipelineGraph(
            pipeline_id=spec.id,
            name=spec.name,
            version=spec.version,
            description=spec.description,
        )
        graph.metadata.update(spec.metadata)

        try:
            for inp in spec.inputs:
                graph.add_input(PipelineInput(inp.name, inp.required, inp.description))
            for step in spec.steps:
                graph.add_stage(self._create_stage_node(step))
            self._check_references(spec, graph)
        except IdepixError as e:
            logger.error(f"Pipeline assembly failed: {e}")
            raise

        logger.info(
            f"Assembled pipeline {spec.id} with {len(graph.stages)} stages "
            f"and {len(spec.merge)} merge sources"
        )
        return Pipeline(graph, spec.merge, spec.virtual_bands, spec.target)

    def assemble_from_yaml(self, yaml_path: Union[str, Path]) -> Pipeline:
        """Assemble pipeline from YAML file."""
        return self.assemble(PipelineSpec.from_yaml(yaml_path))

    def assemble_from_dict(self, data: Dict[str, Any]) -> Pipeline:
        """Assemble pipeline from dictionary."""
        return self.assemble(PipelineSpec.from_dict(data))

    def _create_stage_node(self, step: StepSpec) -> StageNode:
        if step.optional and not step.enabled and not self.registry.has(step.stage):
            logger.info(f"Disabled step {step.id} uses unregistered stage {step.stage}")
            return StageNode(
                id=step.id,
                stage=None,
                bindings=dict(step.inputs),
                parameters=dict(step.parameters),
                optional=True,
                enabled=False,
                stage_id=step.stage,
            )

        stage = self.registry.create(step.stage)
        try:
            parameters = stage.resolve_parameters(step.parameters)
        except GraphValidationError as e:
            raise GraphValidationError(e.message, stage_id=step.id) from e

        node = StageNode(
            id=step.id,
            stage=stage,
            bindings=dict(step.inputs),
            parameters=parameters,
            optional=step.optional,
            enabled=step.enabled,
        )
        logger.debug(f"Added processing step: {step.id} ({step.stage})")
        return node

    def _check_references(self, spec: PipelineSpec, graph: PipelineGraph) -> None:
        if spec.target is None:
            raise DefinitionError(f"Pipeline '{spec.id}' declares no target product")

        target = spec.target
        name_input = graph.get_input(target.name_from)
        if name_input is None or not name_input.required:
            raise GraphValidationError(
                f"Target name source '{target.name_from}' is not a required pipeline input"
            )
        if target.product_type_from and graph.reference_kind(target.product_type_from) is None:
            raise GraphValidationError(
                f"Target type source '{target.product_type_from}' is not an input or step"
            )

        for policy in spec.merge:
            if graph.reference_kind(policy.label) is None:
                raise GraphValidationError(
                    f"Merge source '{policy.label}' is not an input or step"
                )

        names = [vb.name for vb in spec.virtual_bands]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise DefinitionError(f"Virtual bands declared twice: {duplicates}")
