"""
Stage base classes.

A Stage is one named processing unit with typed input slots, typed
parameters and a single output product. Stages either implement a builtin
transform or delegate to an external algorithm; in the latter case the
stage only marshals inputs/parameters and enforces the output-product
contract, the algorithm itself is a black box.

Delegated algorithms have the signature:

    algorithm(inputs: Mapping[str, Product], parameters: Mapping[str, Any])
        -> Mapping[str, numpy.ndarray]

and return one array per output band named by the stage contract.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import numpy as np

from idepix.datamodel import Band, BandSpec, FlagRegistry, Product
from idepix.errors import (
    GraphValidationError,
    IdepixError,
    MissingInputError,
    StageExecutionError,
)

logger = logging.getLogger(__name__)

Algorithm = Callable[[Mapping[str, Product], Mapping[str, Any]], Mapping[str, np.ndarray]]


@dataclass(frozen=True)
class InputSlot:
    """
    A named input product slot.

    Attributes:
        name: Slot name
        required: Whether the slot must be bound
        description: Human-readable description
    """
    name: str
    required: bool = True
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {"name": self.name, "required": self.required, "description": self.description}


@dataclass(frozen=True)
class ParameterSpec:
    """
    A typed stage parameter.

    Attributes:
        name: Parameter name
        type: Expected Python type (bool, int, float, str or list)
        default: Default value (None means no default)
        required: Whether a value must be supplied when there is no default
        interval: Inclusive (min, max) bounds for numeric parameters
        value_set: Allowed values (for lists: allowed elements)
        description: Human-readable description
    """
    name: str
    type: type
    default: Any = None
    required: bool = False
    interval: Optional[Tuple[float, float]] = None
    value_set: Optional[Tuple[Any, ...]] = None
    description: Optional[str] = None

    def validate(self, value: Any, stage_id: str) -> Any:
        """
        Check a parameter value.

        Returns:
            The value, converted where the conversion is lossless (int -> float,
            tuple -> list)

        Raises:
            GraphValidationError: If the value is invalid
        """
        def fail(message: str) -> None:
            raise GraphValidationError(f"Parameter '{self.name}': {message}", stage_id=stage_id)

        if self.type is float and isinstance(value, int) and not isinstance(value, bool):
            value = float(value)
        if self.type is list and isinstance(value, tuple):
            value = list(value)
        if self.type is not bool and isinstance(value, bool):
            fail(f"expected {self.type.__name__}, got bool")
        if not isinstance(value, self.type):
            fail(f"expected {self.type.__name__}, got {type(value).__name__}")

        if self.interval is not None:
            low, high = self.interval
            if not low <= value <= high:
                fail(f"value {value} outside interval [{low}, {high}]")

        if self.value_set is not None:
            items = value if self.type is list else [value]
            invalid = [v for v in items if v not in self.value_set]
            if invalid:
                fail(f"values {invalid} not in {list(self.value_set)}")

        return value

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "type": self.type.__name__,
            "default": self.default,
            "required": self.required,
            "interval": list(self.interval) if self.interval else None,
            "value_set": list(self.value_set) if self.value_set else None,
            "description": self.description,
        }


class Stage(ABC):
    """
    Base class for pipeline stages.

    Subclasses declare:
        stage_id: Registry identifier (e.g. 'idepix.olci.classification')
        name: Human-readable name
        inputs: Input slots
        parameters: Parameter descriptors
        reference_slot: Slot whose geometry, geocoding and times the output takes
        product_type: Type tag of the output product
        name_suffix: Suffix appended to the reference product name
    """

    stage_id: str = ""
    name: str = ""
    inputs: Tuple[InputSlot, ...] = ()
    parameters: Tuple[ParameterSpec, ...] = ()
    reference_slot: str = ""
    product_type: str = ""
    name_suffix: str = ""

    # --- Declarations ---

    def slot(self, name: str) -> Optional[InputSlot]:
        """Get input slot by name."""
        for slot in self.inputs:
            if slot.name == name:
                return slot
        return None

    @property
    def required_slots(self) -> List[str]:
        return [s.name for s in self.inputs if s.required]

    def resolve_parameters(self, values: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """
        Validate parameter values and fill in defaults.

        Raises:
            GraphValidationError: On unknown, missing or invalid parameters
        """
        values = dict(values or {})
        known = {p.name for p in self.parameters}
        unknown = sorted(set(values) - known)
        if unknown:
            raise GraphValidationError(f"Unknown parameters {unknown}", stage_id=self.stage_id)

        resolved: Dict[str, Any] = {}
        for spec in self.parameters:
            if spec.name in values:
                resolved[spec.name] = spec.validate(values[spec.name], self.stage_id)
            elif spec.default is not None:
                resolved[spec.name] = spec.default
            elif spec.required:
                raise GraphValidationError(
                    f"Missing required parameter '{spec.name}'", stage_id=self.stage_id
                )
        return resolved

    @abstractmethod
    def output_bands(self, parameters: Mapping[str, Any]) -> List[BandSpec]:
        """Bands the output product is guaranteed to contain."""

    def output_flags(self, inputs: Mapping[str, Product], parameters: Mapping[str, Any]) -> FlagRegistry:
        """Flag codings attached to the output product."""
        return FlagRegistry()

    def check_inputs(self, inputs: Mapping[str, Product]) -> None:
        """
        Check bound inputs against the declared slots.

        Raises:
            MissingInputError: If a required slot is unbound
            GraphValidationError: If an undeclared slot is bound
        """
        unknown = sorted(set(inputs) - {s.name for s in self.inputs})
        if unknown:
            raise GraphValidationError(f"Unknown input slots {unknown}", stage_id=self.stage_id)
        for slot in self.inputs:
            if slot.required and inputs.get(slot.name) is None:
                raise MissingInputError(
                    "Required input is not bound", stage_id=self.stage_id, slot=slot.name
                )

    # --- Output products ---

    def create_output_shell(
        self,
        inputs: Mapping[str, Product],
        parameters: Mapping[str, Any],
    ) -> Product:
        """Empty output product taking geometry and time from the reference input."""
        reference = inputs[self.reference_slot]
        product = Product(
            name=f"{reference.name}{self.name_suffix}",
            product_type=self.product_type or reference.product_type,
            width=reference.width,
            height=reference.height,
            geocoding=reference.geocoding,
            start_time=reference.start_time,
            end_time=reference.end_time,
        )
        product.flags = self.output_flags(inputs, parameters)
        return product

    def prototype(self, inputs: Mapping[str, Product], parameters: Mapping[str, Any]) -> Product:
        """
        Output product with declared (sample-free) bands.

        Used to check downstream wiring before any stage runs.
        """
        self.check_inputs(inputs)
        product = self.create_output_shell(inputs, parameters)
        for spec in self.output_bands(parameters):
            coding = spec.name if product.flags.has_coding(spec.name) else None
            product.add_band(Band.declared(spec, product.raster_shape, coding))
        return product

    # --- Execution ---

    def execute(self, inputs: Mapping[str, Product], parameters: Mapping[str, Any]) -> Product:
        """
        Execute the stage.

        Args:
            inputs: Slot name -> bound product (absent optional slots omitted)
            parameters: Resolved parameters

        Returns:
            A new output product

        Raises:
            MissingInputError: If a required slot is unbound
            StageExecutionError: If the stage or its algorithm fails, or the
                output violates the stage contract
        """
        self.check_inputs(inputs)
        logger.info(f"Executing stage {self.stage_id}")

        try:
            product = self._execute(inputs, parameters)
        except IdepixError:
            raise
        except Exception as exc:
            raise StageExecutionError(
                f"Stage failed: {type(exc).__name__}: {exc}", stage_id=self.stage_id
            ) from exc

        self._check_output(product, inputs, parameters)
        return product

    @abstractmethod
    def _execute(self, inputs: Mapping[str, Product], parameters: Mapping[str, Any]) -> Product:
        """Produce the output product."""

    def _check_output(
        self,
        product: Product,
        inputs: Mapping[str, Product],
        parameters: Mapping[str, Any],
    ) -> None:
        if not isinstance(product, Product):
            raise StageExecutionError(
                f"Stage returned {type(product).__name__}, expected Product", stage_id=self.stage_id
            )
        if any(product is p for p in inputs.values()):
            raise StageExecutionError("Stage returned one of its inputs", stage_id=self.stage_id)

        reference = inputs.get(self.reference_slot)
        if reference is not None and product.raster_shape != reference.raster_shape:
            raise StageExecutionError(
                f"Output raster {product.raster_shape} does not match input "
                f"raster {reference.raster_shape}",
                stage_id=self.stage_id,
            )
        for spec in self.output_bands(parameters):
            if not product.has_band(spec.name):
                raise StageExecutionError(
                    "Output product misses a contract band",
                    stage_id=self.stage_id,
                    band_name=spec.name,
                )

    def describe(self) -> Dict[str, Any]:
        """Declarations as a dictionary."""
        return {
            "stage_id": self.stage_id,
            "name": self.name,
            "inputs": [s.to_dict() for s in self.inputs],
            "parameters": [p.to_dict() for p in self.parameters],
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(stage_id='{self.stage_id}')"


class DelegatedStage(Stage):
    """
    Stage wrapping an external algorithm.

    The algorithm receives the bound input products and the marshalled
    parameters and returns one array per contract band; the stage builds the
    output product from them.
    """

    def __init__(self, algorithm: Algorithm):
        if not callable(algorithm):
            raise TypeError(f"{type(self).__name__} requires a callable algorithm")
        self.algorithm = algorithm

    def marshal_inputs(self, inputs: Mapping[str, Product]) -> Dict[str, Product]:
        """Inputs handed to the algorithm."""
        return {name: product for name, product in inputs.items() if product is not None}

    def marshal_parameters(
        self,
        inputs: Mapping[str, Product],
        parameters: Mapping[str, Any],
    ) -> Dict[str, Any]:
        """Parameters handed to the algorithm."""
        return dict(parameters)

    def _execute(self, inputs: Mapping[str, Product], parameters: Mapping[str, Any]) -> Product:
        arrays = self.algorithm(
            self.marshal_inputs(inputs),
            self.marshal_parameters(inputs, parameters),
        )
        if not isinstance(arrays, Mapping):
            raise StageExecutionError(
                f"Algorithm returned {type(arrays).__name__}, expected a mapping of arrays",
                stage_id=self.stage_id,
            )
        return self.build_output(inputs, parameters, arrays)

    def build_output(
        self,
        inputs: Mapping[str, Product],
        parameters: Mapping[str, Any],
        arrays: Mapping[str, np.ndarray],
    ) -> Product:
        """
        Build the output product from algorithm arrays.

        Raises:
            StageExecutionError: If a contract band is missing or misshapen
        """
        product = self.create_output_shell(inputs, parameters)
        specs = self.output_bands(parameters)
        for spec in specs:
            data = self._contract_array(arrays, spec.name, product)
            coding = spec.name if product.flags.has_coding(spec.name) else None
            product.add_stored_band(spec, data, flag_coding_name=coding)

        ignored = sorted(set(arrays) - {s.name for s in specs})
        if ignored:
            logger.debug(f"Stage {self.stage_id} ignores non-contract outputs {ignored}")
        return product

    def _contract_array(self, arrays: Mapping[str, np.ndarray], name: str, product: Product) -> np.ndarray:
        if name not in arrays:
            raise StageExecutionError(
                "Algorithm did not produce a contract band", stage_id=self.stage_id, band_name=name
            )
        data = np.asarray(arrays[name])
        if data.shape != product.raster_shape:
            raise StageExecutionError(
                f"Algorithm output has shape {data.shape}, expected {product.raster_shape}",
                stage_id=self.stage_id,
                band_name=name,
            )
        return data
