"""
Stage Registry.

Maps stage identifiers (e.g. 'idepix.olci.classification') to factories
producing Stage instances. Pipelines reference stages by identifier; the
host registers the delegated algorithms it provides, the builtin stages are
registered by load_default_stages().
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from idepix.analysis.library.stage import Stage
from idepix.errors import GraphValidationError

logger = logging.getLogger(__name__)

StageFactory = Callable[[], Stage]


@dataclass
class StageEntry:
    """
    A registered stage factory.

    Attributes:
        stage_id: Registry identifier
        factory: Zero-argument callable returning a new Stage
        description: Human-readable description
        builtin: Whether the stage ships with the package
    """
    stage_id: str
    factory: StageFactory
    description: Optional[str] = None
    builtin: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "stage_id": self.stage_id,
            "description": self.description,
            "builtin": self.builtin,
        }


class StageRegistry:
    """
    Central registry of pipeline stages.

    Usage:
        registry = StageRegistry()
        registry.register("idepix.olci.rad2refl", lambda: Rad2ReflStage(my_algorithm))
        stage = registry.create("idepix.olci.rad2refl")
    """

    def __init__(self):
        self.stages: Dict[str, StageEntry] = {}

    def register(
        self,
        stage_id: str,
        factory: StageFactory,
        description: Optional[str] = None,
        builtin: bool = False,
    ) -> None:
        """
        Register a stage factory.

        Re-registering an identifier replaces the previous factory.
        """
        if not callable(factory):
            raise TypeError(f"Factory for stage '{stage_id}' is not callable")
        if stage_id in self.stages:
            logger.warning(f"Stage {stage_id} already registered, overwriting")
        self.stages[stage_id] = StageEntry(stage_id, factory, description, builtin)
        logger.debug(f"Registered stage: {stage_id}")

    def unregister(self, stage_id: str) -> None:
        self.stages.pop(stage_id, None)

    def get(self, stage_id: str) -> Optional[StageEntry]:
        """Get stage entry by ID."""
        return self.stages.get(stage_id)

    def has(self, stage_id: str) -> bool:
        return stage_id in self.stages

    def create(self, stage_id: str) -> Stage:
        """
        Create a stage instance.

        Raises:
            GraphValidationError: If the identifier is not registered or the
                factory does not produce a Stage
        """
        entry = self.stages.get(stage_id)
        if entry is None:
            raise GraphValidationError(
                f"Unknown stage identifier '{stage_id}'. "
                f"Registered: {sorted(self.stages)}"
            )
        stage = entry.factory()
        if not isinstance(stage, Stage):
            raise GraphValidationError(
                f"Factory for '{stage_id}' returned {type(stage).__name__}, expected Stage"
            )
        return stage

    def list_all(self) -> List[StageEntry]:
        """List all registered stages."""
        return list(self.stages.values())

    def get_statistics(self) -> Dict[str, Any]:
        """Get registry statistics"""
        builtin = sum(1 for e in self.stages.values() if e.builtin)
        return {
            "total_stages": len(self.stages),
            "builtin": builtin,
            "delegated": len(self.stages) - builtin,
        }


_global_registry: Optional[StageRegistry] = None


def get_global_registry() -> StageRegistry:
    """Get or create the global stage registry"""
    global _global_registry
    if _global_registry is None:
        _global_registry = StageRegistry()
    return _global_registry


def load_default_stages(registry: Optional[StageRegistry] = None) -> StageRegistry:
    """
    Register the builtin stages.

    Only stages whose algorithm ships with the package are registered; the
    OLCI stages backed by external algorithms are registered by the host via
    register_olci_stages().
    """
    from idepix.analysis.library.olci import CloudBufferStage, cloud_buffer

    registry = registry or get_global_registry()
    registry.register(
        CloudBufferStage.stage_id,
        lambda: CloudBufferStage(cloud_buffer),
        description=CloudBufferStage.name,
        builtin=True,
    )
    logger.info(f"Loaded {len(registry.stages)} stages")
    return registry
