"""
Analysis layer of the IdePix pipeline.

This module contains:
- Stage library and registry
- Pipeline graph, validation and assembly
"""

from idepix.analysis.library.registry import (
    StageRegistry,
    get_global_registry,
    load_default_stages
)

__all__ = [
    'StageRegistry',
    'get_global_registry',
    'load_default_stages'
]
