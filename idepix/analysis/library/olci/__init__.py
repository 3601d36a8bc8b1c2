"""
OLCI stages and the S3-SNOW pipeline.
"""

import logging
from typing import TYPE_CHECKING, Optional

from idepix.analysis.library.olci.cloud_buffer import buffer_mask, cloud_buffer
from idepix.analysis.library.olci.stages import (
    ClassificationStage,
    CloudBufferStage,
    O2CorrectionStage,
    Rad2ReflStage,
)
from idepix.analysis.library.stage import Algorithm

if TYPE_CHECKING:
    from idepix.analysis.library.registry import StageRegistry

logger = logging.getLogger(__name__)


def register_olci_stages(
    registry: "StageRegistry",
    rad2refl: Optional[Algorithm] = None,
    o2corr: Optional[Algorithm] = None,
    classification: Optional[Algorithm] = None,
    cloud_buffer: Optional[Algorithm] = cloud_buffer,
) -> "StageRegistry":
    """
    Register the OLCI stages backed by the given algorithms.

    Stages whose algorithm is None are not registered.

    Returns:
        The registry
    """
    provided = [
        (Rad2ReflStage, rad2refl),
        (O2CorrectionStage, o2corr),
        (ClassificationStage, classification),
        (CloudBufferStage, cloud_buffer),
    ]
    for stage_cls, algorithm in provided:
        if algorithm is None:
            continue
        registry.register(
            stage_cls.stage_id,
            lambda stage_cls=stage_cls, algorithm=algorithm: stage_cls(algorithm),
            description=stage_cls.name,
        )
    return registry


__all__ = [
    "ClassificationStage",
    "CloudBufferStage",
    "O2CorrectionStage",
    "Rad2ReflStage",
    "buffer_mask",
    "cloud_buffer",
    "register_olci_stages",
]
