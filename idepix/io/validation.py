"""
Source product preconditions.

Checks run before any stage executes; a violated precondition raises
InputValidationError naming the offending product and band.
"""

import logging
import re
from typing import Iterable, Optional

from idepix.analysis.library.olci.constants import (
    ALTITUDE_BAND_NAME,
    INPUT_INCONSISTENCY_ERROR_MESSAGE,
    OLCI_L1B_PRODUCT_TYPES,
    RADIANCE_BAND_NAMES,
)
from idepix.datamodel import Product
from idepix.errors import InputValidationError

logger = logging.getLogger(__name__)

# Product types may carry the platform prefix, e.g. 'S3A_OL_1_EFR'
_PLATFORM_PREFIX = re.compile(r"^S3[A-Z]_")


def is_olci_l1b_product(product: Product) -> bool:
    """Whether the product type is an OLCI L1b type (EFR or ERR)."""
    product_type = _PLATFORM_PREFIX.sub("", product.product_type or "")
    return product_type in OLCI_L1B_PRODUCT_TYPES


def require_bands(product: Product, band_names: Iterable[str]) -> None:
    """
    Check that a product contains every named band.

    Raises:
        InputValidationError: Naming the first missing band
    """
    missing = [name for name in band_names if not product.has_band(name)]
    if missing:
        raise InputValidationError(
            f"Product '{product.name}' misses {len(missing)} required band(s): {missing}",
            band_name=missing[0],
        )


def validate_olci_product(product: Product, require_altitude: bool = False) -> None:
    """
    Check an OLCI L1b source product.

    Args:
        product: Source product
        require_altitude: Whether the 'altitude' band must be present

    Raises:
        InputValidationError: If the product is not OLCI L1b or misses bands
    """
    if not is_olci_l1b_product(product):
        raise InputValidationError(
            f"{INPUT_INCONSISTENCY_ERROR_MESSAGE} Got product type '{product.product_type}'."
        )

    require_bands(product, RADIANCE_BAND_NAMES)
    if require_altitude:
        require_bands(product, [ALTITUDE_BAND_NAME])

    logger.debug(f"Source product '{product.name}' passed OLCI L1b checks")


def validate_dem_product(
    dem: Optional[Product],
    source: Product,
    band_name: str,
) -> None:
    """
    Check an optional DEM product against the source product.

    Args:
        dem: DEM product (None skips the check)
        source: Source product the DEM must match
        band_name: Altitude band expected in the DEM

    Raises:
        InputValidationError: If the DEM band is missing or the raster
            sizes differ
    """
    if dem is None:
        return

    if not dem.has_band(band_name):
        raise InputValidationError(
            f"DEM product '{dem.name}' has no altitude band",
            band_name=band_name,
        )
    if dem.raster_shape != source.raster_shape:
        raise InputValidationError(
            f"DEM product '{dem.name}' raster {dem.width}x{dem.height} does not match "
            f"source raster {source.width}x{source.height}"
        )

    logger.debug(f"DEM product '{dem.name}' matches source '{source.name}'")
