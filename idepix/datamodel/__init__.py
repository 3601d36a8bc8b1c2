"""
Raster data model: products, bands, flag codings and the product merger.
"""

from idepix.datamodel.flags import (
    DEFAULT_PALETTE,
    FlagCoding,
    FlagDefinition,
    FlagRegistry,
    Mask,
)
from idepix.datamodel.merger import (
    COPY_FACETS,
    MergeReport,
    ProductMerger,
    SelectionPolicy,
)
from idepix.datamodel.product import (
    Band,
    BandSpec,
    GeoCoding,
    Product,
    VirtualBand,
)

__all__ = [
    "DEFAULT_PALETTE",
    "FlagCoding",
    "FlagDefinition",
    "FlagRegistry",
    "Mask",
    "COPY_FACETS",
    "MergeReport",
    "ProductMerger",
    "SelectionPolicy",
    "Band",
    "BandSpec",
    "GeoCoding",
    "Product",
    "VirtualBand",
]
