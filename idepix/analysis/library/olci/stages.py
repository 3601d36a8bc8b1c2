"""
OLCI processing stages of the IdePix S3-SNOW chain.

Each stage wraps a delegated algorithm and owns the marshalling of its
inputs/parameters and the band contract of its output product:

- Rad2ReflStage: TOA radiances -> TOA reflectances
- O2CorrectionStage: O2 absorption corrected transmission at band 13
- ClassificationStage: pixel classification flags (and NN value)
- CloudBufferStage: cloud buffer post-processing of the flag band
"""

import copy
import logging
from typing import Any, Dict, List, Mapping

import numpy as np

from idepix.analysis.library.olci.constants import (
    CLASSIF_BAND_NAME,
    CLASSIF_FLAG_CODING,
    CLASSIFICATION_FLAGS,
    CLOUD_BUFFER_FLAG,
    IDEPIX_CLOUD_BUFFER,
    NN_OUTPUT_BAND_NAME,
    REFLECTANCE_BAND_NAMES,
)
from idepix.analysis.library.stage import DelegatedStage, InputSlot, ParameterSpec
from idepix.datamodel import BandSpec, FlagRegistry, Product
from idepix.errors import StageExecutionError

logger = logging.getLogger(__name__)


class Rad2ReflStage(DelegatedStage):
    """Converts OLCI TOA radiances to TOA reflectances."""

    stage_id = "idepix.olci.rad2refl"
    name = "Radiance to reflectance"
    inputs = (InputSlot("sourceProduct", description="The OLCI L1b source product"),)
    parameters = (
        ParameterSpec("sensor", str, default="OLCI", value_set=("OLCI",), description="Source sensor"),
    )
    reference_slot = "sourceProduct"
    product_type = "OLCI_RAD2REFL"
    name_suffix = "_RAD2REFL"

    def output_bands(self, parameters: Mapping[str, Any]) -> List[BandSpec]:
        return [
            BandSpec(
                name,
                "float32",
                unit="dl",
                description=f"TOA reflectance of {name.split('_')[0]}",
                no_data_value=float("nan"),
                no_data_value_used=True,
            )
            for name in REFLECTANCE_BAND_NAMES
        ]


class O2CorrectionStage(DelegatedStage):
    """
    O2 absorption correction at OLCI band 13.

    The DEM altitude band name is only forwarded when a DEM product is bound.
    """

    stage_id = "idepix.olci.o2corr"
    name = "O2 correction"
    inputs = (
        InputSlot("l1bProduct", description="The OLCI L1b source product"),
        InputSlot("DEM", required=False, description="DEM product for O2 correction"),
    )
    parameters = (
        ParameterSpec(
            "demAltitudeBandName",
            str,
            default="band_1",
            description="Name of DEM band in DEM product (if optionally provided)",
        ),
    )
    reference_slot = "l1bProduct"
    product_type = "OLCI_O2CORR"
    name_suffix = "_O2CORR"

    def output_bands(self, parameters: Mapping[str, Any]) -> List[BandSpec]:
        return [
            BandSpec("trans_13", "float32", unit="dl", description="O2 corrected transmission at band 13"),
            BandSpec("press_13", "float32", unit="hPa", description="Apparent surface pressure at band 13"),
            BandSpec("surface_13", "float32", unit="dl", description="Surface transmission at band 13"),
        ]

    def marshal_parameters(self, inputs: Mapping[str, Product], parameters: Mapping[str, Any]) -> Dict[str, Any]:
        params = dict(parameters)
        if inputs.get("DEM") is None:
            params.pop("demAltitudeBandName", None)
        return params


class ClassificationStage(DelegatedStage):
    """
    OLCI pixel classification.

    The algorithm returns one boolean predicate per classification flag
    (flags it does not return stay unset) and, when requested, the neural
    network output 'nn_value'. The stage renders the predicates into the
    'pixel_classif_flags' band, whose coding also defines IDEPIX_CLOUD_BUFFER
    so the flag and its mask exist whether or not the buffer is computed.
    """

    stage_id = "idepix.olci.classification"
    name = "OLCI pixel classification"
    inputs = (
        InputSlot("l1b", description="The OLCI L1b source product"),
        InputSlot("rhotoa", description="TOA reflectance product"),
    )
    parameters = (
        ParameterSpec("copyAllTiePoints", bool, default=True, description="Copy all tie-point grids"),
        ParameterSpec(
            "outputSchillerNNValue",
            bool,
            default=False,
            description="Write NN value to the target product",
        ),
    )
    reference_slot = "l1b"
    product_type = "IDEPIX_OLCI"
    name_suffix = "_CLASSIF"

    def output_bands(self, parameters: Mapping[str, Any]) -> List[BandSpec]:
        specs = [BandSpec(CLASSIF_BAND_NAME, "int32", description="Pixel classification flag")]
        if parameters.get("outputSchillerNNValue"):
            specs.append(BandSpec(NN_OUTPUT_BAND_NAME, "float32", description="Schiller NN output value"))
        return specs

    def output_flags(self, inputs: Mapping[str, Product], parameters: Mapping[str, Any]) -> FlagRegistry:
        registry = FlagRegistry()
        for flag_name, (bit, description) in CLASSIF_FLAG_CODING.items():
            registry.register(CLASSIF_BAND_NAME, flag_name, bit=bit, description=description)
        return registry

    def create_output_shell(self, inputs: Mapping[str, Product], parameters: Mapping[str, Any]) -> Product:
        product = super().create_output_shell(inputs, parameters)
        l1b = inputs["l1b"]
        product.metadata = copy.deepcopy(l1b.metadata)
        if parameters.get("copyAllTiePoints", True):
            product.tie_point_grids = dict(l1b.tie_point_grids)
        return product

    def build_output(
        self,
        inputs: Mapping[str, Product],
        parameters: Mapping[str, Any],
        arrays: Mapping[str, np.ndarray],
    ) -> Product:
        unknown = sorted(set(arrays) - set(CLASSIFICATION_FLAGS) - {NN_OUTPUT_BAND_NAME})
        if unknown:
            raise StageExecutionError(
                f"Classification returned unknown outputs {unknown}", stage_id=self.stage_id
            )

        product = self.create_output_shell(inputs, parameters)
        predicates = {name: arrays[name] for name in CLASSIFICATION_FLAGS if name in arrays}
        flags = product.flags.render(CLASSIF_BAND_NAME, predicates, product.raster_shape)

        for spec in self.output_bands(parameters):
            if spec.name == CLASSIF_BAND_NAME:
                product.add_stored_band(spec, flags, flag_coding_name=CLASSIF_BAND_NAME)
            else:
                product.add_stored_band(spec, self._contract_array(arrays, spec.name, product))
        return product


class CloudBufferStage(DelegatedStage):
    """
    Cloud buffer post-processing.

    Sets the IDEPIX_CLOUD_BUFFER bits of the classification flag band
    (registering the flag if the incoming coding lacks it).
    """

    stage_id = "idepix.olci.cloud_buffer"
    name = "OLCI cloud buffer post-processing"
    inputs = (
        InputSlot("l1b", description="The OLCI L1b source product"),
        InputSlot("olciCloud", description="Classification product"),
    )
    parameters = (
        ParameterSpec("computeCloudBuffer", bool, default=True, description="Compute a cloud buffer"),
        ParameterSpec(
            "cloudBufferWidth",
            int,
            default=2,
            interval=(0, 100),
            description="The width of a cloud 'safety buffer' around a pixel which was classified as cloudy",
        ),
    )
    reference_slot = "olciCloud"
    product_type = "IDEPIX_OLCI"
    name_suffix = "_POSTPROCESSED"

    def output_bands(self, parameters: Mapping[str, Any]) -> List[BandSpec]:
        return [BandSpec(CLASSIF_BAND_NAME, "int32", description="Pixel classification flag")]

    def output_flags(self, inputs: Mapping[str, Product], parameters: Mapping[str, Any]) -> FlagRegistry:
        registry = FlagRegistry()
        registry.merge(inputs["olciCloud"].flags, [CLASSIF_BAND_NAME])
        bit, description = CLOUD_BUFFER_FLAG
        registry.register(CLASSIF_BAND_NAME, IDEPIX_CLOUD_BUFFER, bit=bit, description=description)
        return registry
