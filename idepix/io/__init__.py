"""
Input product handling.
"""

from idepix.io.validation import (
    is_olci_l1b_product,
    require_bands,
    validate_dem_product,
    validate_olci_product,
)

__all__ = [
    "is_olci_l1b_product",
    "require_bands",
    "validate_dem_product",
    "validate_olci_product",
]
