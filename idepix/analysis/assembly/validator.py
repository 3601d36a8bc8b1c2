"""
Pipeline Validator for the IdePix pipeline

Provides pre-execution validation of pipeline graphs: structural checks
(empty graph, cycles), connectivity of stage bindings, availability of
required inputs and stage parameters. Validation never runs a stage.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Collection, Dict, List, Optional, Type

from idepix.analysis.assembly.graph import PipelineGraph
from idepix.errors import (
    CycleDetectedError,
    GraphValidationError,
    MissingInputError,
)

logger = logging.getLogger(__name__)


class ValidationSeverity(Enum):
    """Severity level for validation issues."""
    ERROR = "error"      # Prevents execution
    WARNING = "warning"  # May cause issues
    INFO = "info"        # Informational


class ValidationCategory(Enum):
    """Categories of validation checks."""
    STRUCTURE = "structure"          # Graph structure issues
    CYCLE = "cycle"                  # Cyclic stage dependencies
    CONNECTIVITY = "connectivity"    # Unresolved or unknown bindings
    MISSING_INPUT = "missing_input"  # Required slot or input without a product
    PARAMETER = "parameter"          # Parameter validation issues


_CATEGORY_ERRORS: Dict[ValidationCategory, Type[GraphValidationError]] = {
    ValidationCategory.CYCLE: CycleDetectedError,
    ValidationCategory.MISSING_INPUT: MissingInputError,
}


@dataclass
class ValidationIssue:
    """
    A single validation issue.

    Attributes:
        severity: Issue severity (error, warning, info)
        category: Issue category
        message: Human-readable description
        stage_id: Related stage node ID (if applicable)
        slot: Related input slot (if applicable)
        details: Additional details
    """
    severity: ValidationSeverity
    category: ValidationCategory
    message: str
    stage_id: Optional[str] = None
    slot: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    def to_error(self) -> GraphValidationError:
        """The exception raised for this issue."""
        error_cls = _CATEGORY_ERRORS.get(self.category, GraphValidationError)
        return error_cls(self.message, stage_id=self.stage_id, slot=self.slot)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "severity": self.severity.value,
            "category": self.category.value,
            "message": self.message,
            "stage_id": self.stage_id,
            "slot": self.slot,
            "details": self.details,
        }

    def __str__(self) -> str:
        location = ""
        if self.stage_id:
            location = f"[stage:{self.stage_id}] "
        return f"[{self.severity.value.upper()}] {location}{self.message}"


@dataclass
class ValidationResult:
    """
    Result of pipeline validation.

    Attributes:
        is_valid: Whether pipeline is valid for execution
        issues: List of validation issues
        validation_time: Time taken to validate
    """
    is_valid: bool
    issues: List[ValidationIssue] = field(default_factory=list)
    validation_time: float = 0.0

    @property
    def errors(self) -> List[ValidationIssue]:
        """Get error-level issues."""
        return [i for i in self.issues if i.severity == ValidationSeverity.ERROR]

    @property
    def warnings(self) -> List[ValidationIssue]:
        """Get warning-level issues."""
        return [i for i in self.issues if i.severity == ValidationSeverity.WARNING]

    def raise_for_errors(self) -> None:
        """
        Raise the error of the first error-level issue.

        Raises:
            GraphValidationError: Or its subclass matching the issue category
        """
        errors = self.errors
        if errors:
            raise errors[0].to_error()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "is_valid": self.is_valid,
            "issues": [i.to_dict() for i in self.issues],
            "validation_time": self.validation_time,
            "summary": {
                "errors": len(self.errors),
                "warnings": len(self.warnings),
            },
        }

    def __str__(self) -> str:
        status = "VALID" if self.is_valid else "INVALID"
        lines = [f"[{status}] {len(self.errors)} errors, {len(self.warnings)} warnings"]
        for issue in self.issues:
            if issue.severity != ValidationSeverity.INFO:
                lines.append(f"  {issue}")
        return "\n".join(lines)


class PipelineValidator:
    """
    Pipeline graph validator.

    Performs the validation passes:
    1. Structural validation (non-empty, acyclic)
    2. Connectivity validation (bindings name declared slots and resolve)
    3. Input availability (required slots get a product)
    4. Parameter validation

    Usage:
        validator = PipelineValidator()
        result = validator.validate(graph, supplied_inputs={"source"})
        result.raise_for_errors()
    """

    def validate(
        self,
        graph: PipelineGraph,
        supplied_inputs: Optional[Collection[str]] = None,
    ) -> ValidationResult:
        """
        Validate a pipeline graph.

        Args:
            graph: Pipeline graph to validate
            supplied_inputs: Names of the pipeline inputs that will be
                supplied; None checks wiring only

        Returns:
            ValidationResult with issues
        """
        start_time = datetime.now(timezone.utc)
        issues: List[ValidationIssue] = []

        logger.info(f"Validating pipeline: {graph.id}")

        self._validate_structure(graph, issues)
        self._validate_connectivity(graph, issues)
        self._validate_inputs(graph, supplied_inputs, issues)
        self._validate_parameters(graph, issues)

        has_errors = any(i.severity == ValidationSeverity.ERROR for i in issues)
        result = ValidationResult(
            is_valid=not has_errors,
            issues=issues,
            validation_time=(datetime.now(timezone.utc) - start_time).total_seconds(),
        )

        logger.info(
            f"Validation complete: {len(issues)} issues found, "
            f"{'VALID' if result.is_valid else 'INVALID'}"
        )
        return result

    # --- Structural Validation ---

    def _validate_structure(self, graph: PipelineGraph, issues: List[ValidationIssue]) -> None:
        if graph.is_empty():
            issues.append(ValidationIssue(
                severity=ValidationSeverity.ERROR,
                category=ValidationCategory.STRUCTURE,
                message="Pipeline graph has no stages",
            ))
            return

        try:
            graph.get_execution_order()
        except CycleDetectedError as e:
            issues.append(ValidationIssue(
                severity=ValidationSeverity.ERROR,
                category=ValidationCategory.CYCLE,
                message=f"Pipeline contains a cycle: {e.message}",
            ))

    # --- Connectivity Validation ---

    def _validate_connectivity(self, graph: PipelineGraph, issues: List[ValidationIssue]) -> None:
        for node in graph.stages:
            if node.stage is None and node.active:
                issues.append(ValidationIssue(
                    severity=ValidationSeverity.ERROR,
                    category=ValidationCategory.STRUCTURE,
                    message=f"Stage '{node.stage_id}' is enabled but not available",
                    stage_id=node.id,
                ))
            for slot_name, reference in node.bindings.items():
                if node.stage is not None and node.stage.slot(slot_name) is None:
                    issues.append(ValidationIssue(
                        severity=ValidationSeverity.ERROR,
                        category=ValidationCategory.CONNECTIVITY,
                        message=f"Stage '{node.stage.stage_id}' has no input slot '{slot_name}'",
                        stage_id=node.id,
                        slot=slot_name,
                    ))
                elif graph.reference_kind(reference) is None:
                    issues.append(ValidationIssue(
                        severity=ValidationSeverity.ERROR,
                        category=ValidationCategory.CONNECTIVITY,
                        message=f"Binding references unknown input or stage '{reference}'",
                        stage_id=node.id,
                        slot=slot_name,
                    ))

        consumed = {ref for node in graph.stages for ref in node.bindings.values()}
        for pipeline_input in graph.inputs:
            if pipeline_input.name not in consumed:
                issues.append(ValidationIssue(
                    severity=ValidationSeverity.WARNING,
                    category=ValidationCategory.CONNECTIVITY,
                    message=f"Input '{pipeline_input.name}' is not consumed by any stage",
                ))

    # --- Input Availability ---

    def _validate_inputs(
        self,
        graph: PipelineGraph,
        supplied_inputs: Optional[Collection[str]],
        issues: List[ValidationIssue],
    ) -> None:
        if supplied_inputs is not None:
            for pipeline_input in graph.inputs:
                if pipeline_input.required and pipeline_input.name not in supplied_inputs:
                    issues.append(ValidationIssue(
                        severity=ValidationSeverity.ERROR,
                        category=ValidationCategory.MISSING_INPUT,
                        message=f"Required pipeline input '{pipeline_input.name}' is not supplied",
                    ))

        for node in graph.stages:
            if not node.active:
                issues.append(ValidationIssue(
                    severity=ValidationSeverity.INFO,
                    category=ValidationCategory.STRUCTURE,
                    message="Optional stage is disabled and will be skipped",
                    stage_id=node.id,
                ))
                continue
            if node.stage is None:
                continue

            for slot in node.stage.inputs:
                if not slot.required:
                    continue
                reference = node.bindings.get(slot.name)
                if reference is None:
                    issues.append(ValidationIssue(
                        severity=ValidationSeverity.ERROR,
                        category=ValidationCategory.MISSING_INPUT,
                        message="Required input slot is not bound",
                        stage_id=node.id,
                        slot=slot.name,
                    ))
                elif not self._is_available(graph, reference, supplied_inputs):
                    issues.append(ValidationIssue(
                        severity=ValidationSeverity.ERROR,
                        category=ValidationCategory.MISSING_INPUT,
                        message=f"Required input slot is bound to '{reference}' which provides no product",
                        stage_id=node.id,
                        slot=slot.name,
                    ))

    @staticmethod
    def _is_available(
        graph: PipelineGraph,
        reference: str,
        supplied_inputs: Optional[Collection[str]],
    ) -> bool:
        kind = graph.reference_kind(reference)
        if kind == "input":
            return supplied_inputs is None or reference in supplied_inputs
        if kind == "stage":
            return graph.get_stage(reference).active
        # Unresolved references are reported as connectivity issues
        return True

    # --- Parameter Validation ---

    def _validate_parameters(self, graph: PipelineGraph, issues: List[ValidationIssue]) -> None:
        for node in graph.stages:
            if node.stage is None:
                continue
            try:
                node.stage.resolve_parameters(node.parameters)
            except GraphValidationError as e:
                issues.append(ValidationIssue(
                    severity=ValidationSeverity.ERROR,
                    category=ValidationCategory.PARAMETER,
                    message=e.message,
                    stage_id=node.id,
                ))
