"""
Pipeline execution and final-product assembly.

A Pipeline owns its graph, the merge plan, the virtual-band definitions
and the target naming. Its lifecycle is:

    BUILDING -> VALIDATED -> EXECUTING -> ASSEMBLED
                                   \\-> FAILED (from any state)

Validation checks everything that can be checked without pixels: input
preconditions, graph wiring, and the final-product definition (merged on
prototype products with declared bands, virtual bands and masks bound).
Execution runs each active stage exactly once in topological order; any
failure is terminal and no partial product is published.
"""

import copy
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, Sequence

from idepix.analysis.assembly.graph import PipelineGraph, PipelineState, StageNode, StageStatus
from idepix.analysis.assembly.validator import PipelineValidator, ValidationResult
from idepix.datamodel import Product, ProductMerger, SelectionPolicy
from idepix.errors import (
    DefinitionError,
    GraphValidationError,
    IdepixError,
    MissingInputError,
    PipelineStateError,
)

if TYPE_CHECKING:
    from idepix.analysis.assembly.assembler import TargetSpec, VirtualBandSpec

logger = logging.getLogger(__name__)

InputCheck = Callable[[Mapping[str, Optional[Product]]], None]

PROCESSING_GRAPH_KEY = "Processing_Graph"


class Pipeline:
    """
    An assembled processing pipeline.

    Usage:
        pipeline = assembler.assemble(spec)
        pipeline.add_input_check(check_source)
        pipeline.validate({"source": l1b, "dem": None})
        product = pipeline.run({"source": l1b, "dem": None})
    """

    def __init__(
        self,
        graph: PipelineGraph,
        merge: Sequence[SelectionPolicy],
        virtual_bands: Sequence["VirtualBandSpec"],
        target: "TargetSpec",
    ):
        self.graph = graph
        self.merge = list(merge)
        self.virtual_bands = list(virtual_bands)
        self.target = target
        self.validator = PipelineValidator()

        self._state = PipelineState.BUILDING
        self._input_checks: List[InputCheck] = []
        self._validated_inputs: Optional[Dict[str, Optional[Product]]] = None
        self._result: Optional[Product] = None
        self.error: Optional[IdepixError] = None
        self.merge_report = None

    # --- State ---

    @property
    def state(self) -> PipelineState:
        """Get current state."""
        return self._state

    @property
    def result(self) -> Optional[Product]:
        """The final product once ASSEMBLED."""
        return self._result

    def _require_state(self, operation: str, *states: PipelineState) -> None:
        if self._state not in states:
            raise PipelineStateError(
                f"Cannot {operation} pipeline '{self.graph.id}' in state {self._state.value}"
            )

    def _fail(self, error: Exception) -> None:
        self._state = PipelineState.FAILED
        self.error = error if isinstance(error, IdepixError) else None
        logger.error(f"Pipeline {self.graph.id} failed: {error}")

    # --- Configuration ---

    def add_input_check(self, check: InputCheck) -> None:
        """
        Register a precondition on the pipeline inputs.

        Checks receive the inputs mapping (absent optional inputs as None)
        and raise InputValidationError when a precondition is violated.
        """
        self._require_state("configure", PipelineState.BUILDING)
        self._input_checks.append(check)

    # --- Validation ---

    def validate(self, inputs: Mapping[str, Optional[Product]]) -> ValidationResult:
        """
        Validate the pipeline against concrete inputs without running a stage.

        Args:
            inputs: Pipeline input name -> product (None for absent optional inputs)

        Returns:
            The graph validation result

        Raises:
            InputValidationError: If an input precondition fails
            GraphValidationError: On cycles, unresolved or missing inputs
            DefinitionError: If the final product cannot be defined
        """
        self._require_state("validate", PipelineState.BUILDING, PipelineState.VALIDATED)
        inputs = dict(inputs)

        try:
            unknown = sorted(name for name in inputs if self.graph.get_input(name) is None)
            if unknown:
                raise GraphValidationError(f"Unknown pipeline inputs {unknown}")
            supplied = {name for name, product in inputs.items() if product is not None}

            result = self.validator.validate(self.graph, supplied)
            result.raise_for_errors()

            for check in self._input_checks:
                check(inputs)

            self._check_definitions(inputs)
        except Exception as e:
            self._fail(e)
            raise

        self._state = PipelineState.VALIDATED
        self._validated_inputs = inputs
        logger.info(f"Pipeline {self.graph.id} validated")
        return result

    def _check_definitions(self, inputs: Mapping[str, Optional[Product]]) -> None:
        prototypes = {
            name: product.declared_copy()
            for name, product in inputs.items() if product is not None
        }
        outputs: Dict[str, Product] = {}
        for node in self.graph.iter_stages():
            if not node.active:
                continue
            bound = self._bind(node, prototypes, outputs)
            outputs[node.id] = node.stage.prototype(bound, node.parameters)
        self._assemble_target(prototypes, outputs)

    # --- Execution ---

    def run(self, inputs: Mapping[str, Optional[Product]]) -> Product:
        """
        Execute the pipeline and assemble the final product.

        Validates first unless already validated with the same inputs.

        Returns:
            The final merged product

        Raises:
            PipelineStateError: If the pipeline already ran or failed
            IdepixError: Any validation, stage or assembly failure
        """
        self._require_state("run", PipelineState.BUILDING, PipelineState.VALIDATED)
        if not self._same_inputs(inputs):
            self.validate(inputs)
        inputs = dict(inputs)

        self._state = PipelineState.EXECUTING
        logger.info(f"Executing pipeline {self.graph.id}")
        outputs: Dict[str, Product] = {}

        try:
            for node in self.graph.iter_stages():
                self._run_node(node, inputs, outputs)
            product = self._assemble_target(inputs, outputs)
            product.metadata[PROCESSING_GRAPH_KEY] = self.processing_graph()
        except Exception as e:
            self._fail(e)
            raise
        finally:
            outputs.clear()

        self._result = product
        self._state = PipelineState.ASSEMBLED
        logger.info(f"Pipeline {self.graph.id} assembled product '{product.name}'")
        return product

    def _same_inputs(self, inputs: Mapping[str, Optional[Product]]) -> bool:
        validated = self._validated_inputs
        if self._state != PipelineState.VALIDATED or validated is None:
            return False
        if set(validated) != set(inputs):
            return False
        return all(validated[name] is inputs[name] for name in inputs)

    def _run_node(
        self,
        node: StageNode,
        inputs: Mapping[str, Optional[Product]],
        outputs: Dict[str, Product],
    ) -> None:
        if not node.active:
            node.mark(StageStatus.SKIPPED)
            logger.info(f"Skipping disabled stage {node.id}")
            return

        bound = self._bind(node, inputs, outputs)
        node.mark(StageStatus.RUNNING)
        try:
            product = node.stage.execute(bound, node.parameters)
        except IdepixError as e:
            node.mark(StageStatus.FAILED, str(e))
            raise

        outputs[node.id] = product
        node.mark(StageStatus.DONE)
        logger.debug(f"Stage {node.id} finished in {node.duration_seconds:.3f}s")

    def _bind(
        self,
        node: StageNode,
        inputs: Mapping[str, Optional[Product]],
        outputs: Mapping[str, Product],
    ) -> Dict[str, Product]:
        """Resolve the slot bindings of a node to products."""
        bound: Dict[str, Product] = {}
        for slot in node.stage.inputs:
            reference = node.bindings.get(slot.name)
            product = None
            if reference is not None:
                if self.graph.reference_kind(reference) == "input":
                    product = inputs.get(reference)
                else:
                    product = outputs.get(reference)
            if product is not None:
                bound[slot.name] = product
            elif slot.required:
                raise MissingInputError(
                    f"Required input '{reference}' provides no product",
                    stage_id=node.id,
                    slot=slot.name,
                )
        return bound

    # --- Final product ---

    def _assemble_target(
        self,
        inputs: Mapping[str, Optional[Product]],
        outputs: Mapping[str, Product],
    ) -> Product:
        products: Dict[str, Product] = {k: v for k, v in inputs.items() if v is not None}
        products.update(outputs)

        target = self._create_target(products)
        merger = ProductMerger(target)
        merger.merge([(products.get(policy.label), policy) for policy in self.merge])
        self.merge_report = merger.report

        for vb in self.virtual_bands:
            target.add_virtual_band(vb.to_band_spec(), vb.expression)

        for band_name in self.target.mask_bands:
            if not target.flags.has_coding(band_name):
                raise DefinitionError("Mask band has no flag coding", band_name=band_name)
            masks = target.flags.create_masks(
                band_name, self.target.mask_colors, self.target.mask_transparency
            )
            for mask in masks:
                if target.has_mask(mask.name):
                    if target.get_mask(mask.name).expression != mask.expression:
                        raise DefinitionError(
                            f"Mask '{mask.name}' conflicts with an existing mask",
                            expression=mask.expression,
                        )
                    continue
                target.add_mask(mask)

        return target

    def _create_target(self, products: Mapping[str, Product]) -> Product:
        spec = self.target
        reference = products[spec.name_from]

        product_type = spec.product_type
        if product_type is None and spec.product_type_from:
            source = products.get(spec.product_type_from)
            if source is None:
                raise DefinitionError(
                    f"Target type source '{spec.product_type_from}' provides no product"
                )
            product_type = source.product_type

        target = Product(
            name=f"{reference.name}{spec.name_suffix}",
            product_type=product_type or reference.product_type,
            width=reference.width,
            height=reference.height,
            geocoding=reference.geocoding,
            start_time=reference.start_time,
            end_time=reference.end_time,
        )
        target.auto_grouping = spec.auto_grouping
        return target

    def processing_graph(self) -> Dict[str, Any]:
        """Processing history recorded in the final product metadata."""
        return {
            "pipeline": self.graph.id,
            "version": self.graph.version,
            "processing_time": datetime.now(timezone.utc).isoformat(),
            "metadata": copy.deepcopy(self.graph.metadata),
            "nodes": [
                {
                    "id": node.id,
                    "stage": node.stage_id,
                    "parameters": dict(node.parameters),
                    "status": node.status.value,
                }
                for node in self.graph.stages
            ],
        }

    def __repr__(self) -> str:
        return f"Pipeline(id='{self.graph.id}', state={self._state.value})"
