"""
Cloud buffer post-processing for OLCI pixel classification.

Marks a safety buffer of n pixels around every cloudy pixel. Buffer pixels
are clear (not cloud) and valid pixels within a (2n+1) x (2n+1) window of
a cloud pixel.

This is the builtin algorithm registered for the cloud-buffer stage; it
follows the delegated-algorithm signature so a host may replace it.
"""

import logging
from typing import Any, Dict, Mapping

import numpy as np
from scipy import ndimage

from idepix.analysis.library.olci.constants import (
    CLASSIF_BAND_NAME,
    CLOUD_BUFFER_FLAG,
    IDEPIX_CLOUD,
    IDEPIX_CLOUD_BUFFER,
    IDEPIX_INVALID,
)
from idepix.datamodel import FlagRegistry, Product

logger = logging.getLogger(__name__)


def buffer_mask(cloud: np.ndarray, invalid: np.ndarray, width: int) -> np.ndarray:
    """
    Pixels within `width` pixels of a cloud that are neither cloud nor invalid.

    Args:
        cloud: Boolean cloud mask
        invalid: Boolean invalid-pixel mask
        width: Buffer width in pixels

    Returns:
        Boolean buffer mask
    """
    if width <= 0 or not cloud.any():
        return np.zeros(cloud.shape, dtype=bool)
    structure = np.ones((2 * width + 1, 2 * width + 1), dtype=bool)
    dilated = ndimage.binary_dilation(cloud, structure=structure)
    return dilated & ~cloud & ~invalid


def cloud_buffer(inputs: Mapping[str, Product], parameters: Mapping[str, Any]) -> Dict[str, np.ndarray]:
    """
    Compute the post-processed classification flag band.

    Args:
        inputs: 'l1b' and 'olciCloud' products
        parameters: 'computeCloudBuffer', 'cloudBufferWidth'

    Returns:
        {'pixel_classif_flags': flags with IDEPIX_CLOUD_BUFFER set}
    """
    classification = inputs["olciCloud"]
    flags = classification.get_band(CLASSIF_BAND_NAME).read()

    if not parameters.get("computeCloudBuffer", True):
        return {CLASSIF_BAND_NAME: np.array(flags, copy=True)}

    registry = FlagRegistry()
    registry.merge(classification.flags, [CLASSIF_BAND_NAME])
    bit, description = CLOUD_BUFFER_FLAG
    registry.register(CLASSIF_BAND_NAME, IDEPIX_CLOUD_BUFFER, bit=bit, description=description)

    cloud = registry.bit_test(CLASSIF_BAND_NAME, IDEPIX_CLOUD)(flags)
    invalid = registry.bit_test(CLASSIF_BAND_NAME, IDEPIX_INVALID)(flags)
    width = parameters.get("cloudBufferWidth", 2)

    buffer = buffer_mask(cloud, invalid, width)
    logger.debug(f"Cloud buffer of width {width} marks {int(buffer.sum())} pixels")
    return {CLASSIF_BAND_NAME: registry.set_flag(flags, CLASSIF_BAND_NAME, IDEPIX_CLOUD_BUFFER, buffer)}
