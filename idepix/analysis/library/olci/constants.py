"""
OLCI band names and IdePix classification flags.
"""

from typing import Dict, List, Tuple

NUM_OLCI_BANDS = 21

RADIANCE_BAND_NAMES: List[str] = [f"Oa{i:02d}_radiance" for i in range(1, NUM_OLCI_BANDS + 1)]
REFLECTANCE_BAND_NAMES: List[str] = [f"Oa{i:02d}_reflectance" for i in range(1, NUM_OLCI_BANDS + 1)]

# OLCI L1b product types (optionally prefixed with the platform, e.g. S3A_)
OLCI_L1B_PRODUCT_TYPES = ("OL_1_EFR", "OL_1_ERR")

CLASSIF_BAND_NAME = "pixel_classif_flags"
NN_OUTPUT_BAND_NAME = "nn_value"
ALTITUDE_BAND_NAME = "altitude"

O2_CORRECTION_BAND_NAMES: List[str] = ["trans_13", "press_13", "surface_13"]

AUTO_GROUPING = "Oa*_radiance:Oa*_reflectance"

IDEPIX_INVALID = "IDEPIX_INVALID"
IDEPIX_CLOUD = "IDEPIX_CLOUD"
IDEPIX_CLOUD_AMBIGUOUS = "IDEPIX_CLOUD_AMBIGUOUS"
IDEPIX_CLOUD_SURE = "IDEPIX_CLOUD_SURE"
IDEPIX_CLOUD_BUFFER = "IDEPIX_CLOUD_BUFFER"
IDEPIX_CLOUD_SHADOW = "IDEPIX_CLOUD_SHADOW"
IDEPIX_SNOW_ICE = "IDEPIX_SNOW_ICE"
IDEPIX_BRIGHT = "IDEPIX_BRIGHT"
IDEPIX_WHITE = "IDEPIX_WHITE"
IDEPIX_COASTLINE = "IDEPIX_COASTLINE"
IDEPIX_LAND = "IDEPIX_LAND"

# Flags rendered by the classification stage: name -> (bit, description)
CLASSIFICATION_FLAGS: Dict[str, Tuple[int, str]] = {
    IDEPIX_INVALID: (0, "Invalid pixels"),
    IDEPIX_CLOUD: (1, "Pixels which are either cloud_sure or cloud_ambiguous"),
    IDEPIX_CLOUD_AMBIGUOUS: (2, "Semi transparent clouds, or clouds where the detection level is uncertain"),
    IDEPIX_CLOUD_SURE: (3, "Fully opaque clouds with full confidence of their detection"),
    IDEPIX_CLOUD_SHADOW: (5, "Pixels is affect by a cloud shadow"),
    IDEPIX_SNOW_ICE: (6, "Clear snow/ice pixels"),
    IDEPIX_BRIGHT: (7, "Bright pixels"),
    IDEPIX_WHITE: (8, "White pixels"),
    IDEPIX_COASTLINE: (9, "Pixels at a coastline"),
    IDEPIX_LAND: (10, "Land pixels"),
}

# Flag set by the cloud buffer post-processing
CLOUD_BUFFER_FLAG: Tuple[int, str] = (4, "A buffer of n pixels around a cloud. n is a user supplied parameter")

# Complete coding of the classification flag band, in bit order
CLASSIF_FLAG_CODING: Dict[str, Tuple[int, str]] = dict(
    sorted({**CLASSIFICATION_FLAGS, IDEPIX_CLOUD_BUFFER: CLOUD_BUFFER_FLAG}.items(), key=lambda item: item[1][0])
)

FLAG_COLORS: Dict[str, Tuple[int, int, int]] = {
    IDEPIX_INVALID: (255, 0, 0),
    IDEPIX_CLOUD: (255, 0, 255),
    IDEPIX_CLOUD_AMBIGUOUS: (255, 255, 0),
    IDEPIX_CLOUD_SURE: (255, 0, 0),
    IDEPIX_CLOUD_BUFFER: (255, 200, 0),
    IDEPIX_CLOUD_SHADOW: (255, 0, 0),
    IDEPIX_SNOW_ICE: (0, 255, 255),
    IDEPIX_BRIGHT: (255, 255, 0),
    IDEPIX_WHITE: (255, 192, 203),
    IDEPIX_COASTLINE: (0, 255, 0),
    IDEPIX_LAND: (0, 128, 0),
}

SURFACE_PRESSURE_BAND_NAME = "surface_pressure"
SURFACE_PRESSURE_EXPRESSION = "(1013.25 * exp(-altitude/8400))"

CLOUD_OVER_SNOW_BAND_NAME = "cloud_over_snow"
CLOUD_OVER_SNOW_EXPRESSION = (
    "pixel_classif_flags.IDEPIX_LAND && Oa21_reflectance > 0.5 && surface_13 - trans_13 < 0.01"
)

INPUT_INCONSISTENCY_ERROR_MESSAGE = (
    "Selected cloud screening algorithm cannot be used with given input product. "
    "Valid are: OLCI L1b (OL_1_EFR, OL_1_ERR) products."
)
