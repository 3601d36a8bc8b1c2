"""
Error taxonomy for the IdePix pipeline.

Every failure is terminal for the pipeline run it occurs in. Errors carry
the context needed to diagnose them (stage id, band name, formula text).
"""

from typing import Optional


class IdepixError(Exception):
    """Base exception for IdePix pipeline errors."""

    def __init__(
        self,
        message: str,
        stage_id: Optional[str] = None,
        band_name: Optional[str] = None,
        expression: Optional[str] = None,
        slot: Optional[str] = None,
    ):
        self.message = message
        self.stage_id = stage_id
        self.band_name = band_name
        self.expression = expression
        self.slot = slot
        super().__init__(self._format())

    def _format(self) -> str:
        context = []
        if self.stage_id:
            context.append(f"stage={self.stage_id}")
        if self.slot:
            context.append(f"slot={self.slot}")
        if self.band_name:
            context.append(f"band={self.band_name}")
        if self.expression:
            context.append(f"expression='{self.expression}'")
        if context:
            return f"{self.message} [{', '.join(context)}]"
        return self.message


class InputValidationError(IdepixError):
    """Source product fails a required-band or geometry precondition."""

    pass


class GraphValidationError(IdepixError):
    """Pipeline graph is malformed (cycle, unresolved reference, bad parameter)."""

    pass


class MissingInputError(GraphValidationError):
    """A stage lacks a required bound input."""

    pass


class CycleDetectedError(GraphValidationError):
    """Raised when a cycle is detected in the pipeline graph."""

    pass


class DefinitionError(IdepixError):
    """Undefined formula reference, overlapping flag bits or colliding band names."""

    pass


class StageExecutionError(IdepixError):
    """A stage (or its delegated algorithm) failed."""

    pass


class PipelineStateError(IdepixError):
    """Operation not allowed in the current pipeline state."""

    pass
