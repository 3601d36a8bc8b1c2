"""
Stage library for the IdePix pipeline.

Contains the stage base classes (typed input slots, typed parameters,
delegated algorithms) and the OLCI stages of the S3-SNOW chain.

Registry provides centralized stage discovery by identifier.
"""

from idepix.analysis.library.registry import (
    StageEntry,
    StageRegistry,
    get_global_registry,
    load_default_stages
)
from idepix.analysis.library.stage import (
    Algorithm,
    DelegatedStage,
    InputSlot,
    ParameterSpec,
    Stage
)

__all__ = [
    'StageEntry',
    'StageRegistry',
    'get_global_registry',
    'load_default_stages',
    'Algorithm',
    'DelegatedStage',
    'InputSlot',
    'ParameterSpec',
    'Stage'
]
