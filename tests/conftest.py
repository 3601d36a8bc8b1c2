"""
Shared fixtures for the IdePix tests.

Provides a synthetic OLCI L1b product and deterministic stand-ins for the
delegated OLCI algorithms (radiance to reflectance, O2 correction and
pixel classification).
"""

from datetime import datetime, timezone

import numpy as np
import pytest

from idepix.analysis.library import StageRegistry
from idepix.analysis.library.olci import register_olci_stages
from idepix.analysis.library.olci.constants import (
    IDEPIX_CLOUD,
    IDEPIX_CLOUD_SURE,
    IDEPIX_LAND,
    NN_OUTPUT_BAND_NAME,
    RADIANCE_BAND_NAMES,
    REFLECTANCE_BAND_NAMES,
)
from idepix.datamodel import BandSpec, GeoCoding, Product

SHAPE = (3, 4)  # rows, cols
SOURCE_NAME = "S3A_OL_1_EFR____20180315T101010_TEST"

QUALITY_FLAGS = {"invalid": 25, "bright": 27, "land": 31}


def make_olci_product(
    name=SOURCE_NAME,
    product_type="OL_1_EFR",
    shape=SHAPE,
    altitude=None,
    with_altitude=True,
    radiance_bands=RADIANCE_BAND_NAMES,
):
    """Synthetic OLCI L1b product with radiances, altitude and quality flags."""
    rows, cols = shape
    product = Product(
        name,
        product_type,
        width=cols,
        height=rows,
        geocoding=GeoCoding(transform=(0.003, 0.0, 10.0, 0.0, -0.003, 60.0)),
        start_time=datetime(2018, 3, 15, 10, 10, 10, tzinfo=timezone.utc),
        end_time=datetime(2018, 3, 15, 10, 13, 10, tzinfo=timezone.utc),
    )
    product.metadata = {"Manifest": {"platform": "Sentinel-3A", "orbit": 10811}}
    product.tie_point_grids = {"SZA": np.full((2, 2), 42.0)}

    for i, band_name in enumerate(radiance_bands):
        product.add_stored_band(
            BandSpec(band_name, "float32", unit="mW.m-2.sr-1.nm-1"),
            np.full(shape, 50.0 + i, dtype=np.float32),
        )

    if with_altitude:
        values = np.zeros(shape, dtype=np.float32) if altitude is None else altitude
        product.add_stored_band(BandSpec("altitude", "float32", unit="m"), values)

    for flag_name, bit in QUALITY_FLAGS.items():
        product.flags.register("quality_flags", flag_name, bit=bit)
    product.add_stored_band(
        BandSpec("quality_flags", "uint32"),
        np.full(shape, 1 << QUALITY_FLAGS["land"], dtype=np.uint32),
        flag_coding_name="quality_flags",
    )
    return product


def make_dem_product(shape=SHAPE, band_name="band_1", elevation=350.0):
    """Synthetic DEM product."""
    rows, cols = shape
    dem = Product("GETASSE30", "DEM", width=cols, height=rows)
    dem.add_stored_band(BandSpec(band_name, "float32", unit="m"), np.full(shape, elevation))
    return dem


class FakeOlciAlgorithms:
    """
    Deterministic stand-ins for the delegated OLCI algorithms.

    Every call is recorded so that tests can assert which stages ran and
    with which parameters.
    """

    def __init__(self, shape=SHAPE):
        self.shape = shape
        self.oa21_reflectance = np.full(shape, 0.6, dtype=np.float32)
        self.surface_13 = np.full(shape, 0.40, dtype=np.float32)
        self.trans_13 = np.full(shape, 0.395, dtype=np.float32)
        self.land = np.ones(shape, dtype=bool)
        self.cloud = np.zeros(shape, dtype=bool)
        self.calls = []
        self.parameters = {}
        self.inputs = {}

    def _record(self, name, inputs, parameters):
        self.calls.append(name)
        self.inputs[name] = sorted(inputs)
        self.parameters[name] = dict(parameters)

    def rad2refl(self, inputs, parameters):
        self._record("rad2refl", inputs, parameters)
        source = inputs["sourceProduct"]
        arrays = {
            refl: source.get_band(rad).read() * np.float32(0.001)
            for rad, refl in zip(RADIANCE_BAND_NAMES, REFLECTANCE_BAND_NAMES)
        }
        arrays["Oa21_reflectance"] = self.oa21_reflectance
        return arrays

    def o2corr(self, inputs, parameters):
        self._record("o2corr", inputs, parameters)
        return {
            "trans_13": self.trans_13,
            "press_13": self.trans_13 * 1013.25,
            "surface_13": self.surface_13,
        }

    def classification(self, inputs, parameters):
        self._record("classification", inputs, parameters)
        arrays = {
            IDEPIX_LAND: self.land,
            IDEPIX_CLOUD: self.cloud,
            IDEPIX_CLOUD_SURE: self.cloud,
        }
        if parameters.get("outputSchillerNNValue"):
            arrays[NN_OUTPUT_BAND_NAME] = np.full(self.shape, 2.5)
        return arrays


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def olci_product():
    """OLCI L1b source product at sea level."""
    return make_olci_product()


@pytest.fixture
def make_product():
    """Factory for OLCI L1b source products."""
    return make_olci_product


@pytest.fixture
def dem_product():
    """DEM product matching the source raster."""
    return make_dem_product()


@pytest.fixture
def algorithms():
    """Fake delegated algorithms."""
    return FakeOlciAlgorithms()


@pytest.fixture
def registry(algorithms):
    """Stage registry with all OLCI stages backed by the fake algorithms."""
    return register_olci_stages(
        StageRegistry(),
        rad2refl=algorithms.rad2refl,
        o2corr=algorithms.o2corr,
        classification=algorithms.classification,
    )
