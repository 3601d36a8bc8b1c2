"""
IdePix OLCI S3-SNOW pipeline.

Pixel classification of OLCI L1b products for the S3-SNOW project:

    source ──> rad2refl ──┐
      │                   ├──> classification ──> cloud_buffer (optional)
      ├───────────────────┘
      └──> o2corr (optional, uses the DEM if given)

The final product '<source>_IDEPIX' carries the classification flags and
masks, the selected radiance/reflectance bands and, with the O2 correction
enabled, the O2 bands, the altitude and the virtual bands
'surface_pressure' and 'cloud_over_snow'.
"""

import logging
from typing import Any, Dict, List, Optional

from idepix.analysis.assembly import (
    InputSpec,
    Pipeline,
    PipelineAssembler,
    PipelineSpec,
    StepSpec,
    TargetSpec,
    VirtualBandSpec,
)
from idepix.analysis.library.olci.constants import (
    ALTITUDE_BAND_NAME,
    AUTO_GROUPING,
    CLASSIF_BAND_NAME,
    CLOUD_OVER_SNOW_BAND_NAME,
    CLOUD_OVER_SNOW_EXPRESSION,
    FLAG_COLORS,
    NN_OUTPUT_BAND_NAME,
    O2_CORRECTION_BAND_NAMES,
    SURFACE_PRESSURE_BAND_NAME,
    SURFACE_PRESSURE_EXPRESSION,
)
from idepix.analysis.library.olci.stages import (
    ClassificationStage,
    CloudBufferStage,
    O2CorrectionStage,
    Rad2ReflStage,
)
from idepix.analysis.library.registry import StageRegistry
from idepix.config import S3SnowSettings
from idepix.datamodel import Product, SelectionPolicy
from idepix.errors import DefinitionError
from idepix.io.validation import validate_dem_product, validate_olci_product

logger = logging.getLogger(__name__)

PIPELINE_ID = "idepix_olci_s3snow"
SOURCE_INPUT = "source"
DEM_INPUT = "dem"

RAD2REFL_STEP = "rad2refl"
O2CORR_STEP = "o2corr"
CLASSIFICATION_STEP = "classification"
CLOUD_BUFFER_STEP = "cloud_buffer"

O2_REQUIRED_REFLECTANCE = "Oa21_reflectance"


def build_s3snow_spec(settings: Optional[S3SnowSettings] = None) -> PipelineSpec:
    """
    Build the S3-SNOW pipeline specification.

    Args:
        settings: Pipeline settings (defaults if None)

    Returns:
        PipelineSpec for the assembler

    Raises:
        DefinitionError: If the O2 correction is enabled while
            'Oa21_reflectance' is not among the reflectance bands to copy
    """
    settings = settings or S3SnowSettings()
    apply_o2 = settings.apply_o2_corrected_transmission

    if apply_o2 and O2_REQUIRED_REFLECTANCE not in settings.reflectance_bands_to_copy:
        raise DefinitionError(
            f"The O2 correction requires '{O2_REQUIRED_REFLECTANCE}' among the "
            f"reflectance bands to copy",
            band_name=CLOUD_OVER_SNOW_BAND_NAME,
            expression=CLOUD_OVER_SNOW_EXPRESSION,
        )

    steps = [
        StepSpec(
            id=RAD2REFL_STEP,
            stage=Rad2ReflStage.stage_id,
            inputs={"sourceProduct": SOURCE_INPUT},
            parameters={"sensor": "OLCI"},
        ),
        StepSpec(
            id=O2CORR_STEP,
            stage=O2CorrectionStage.stage_id,
            inputs={"l1bProduct": SOURCE_INPUT, "DEM": DEM_INPUT},
            parameters={"demAltitudeBandName": settings.dem_band_name},
            optional=True,
            enabled=apply_o2,
        ),
        StepSpec(
            id=CLASSIFICATION_STEP,
            stage=ClassificationStage.stage_id,
            inputs={"l1b": SOURCE_INPUT, "rhotoa": RAD2REFL_STEP},
            parameters={
                "copyAllTiePoints": True,
                "outputSchillerNNValue": settings.output_schiller_nn_value,
            },
        ),
        StepSpec(
            id=CLOUD_BUFFER_STEP,
            stage=CloudBufferStage.stage_id,
            inputs={"l1b": SOURCE_INPUT, "olciCloud": CLASSIFICATION_STEP},
            parameters={
                "computeCloudBuffer": True,
                "cloudBufferWidth": settings.cloud_buffer_width,
            },
            optional=True,
            enabled=settings.compute_cloud_buffer,
        ),
    ]

    merge = [
        SelectionPolicy(
            CLASSIFICATION_STEP,
            bands=(NN_OUTPUT_BAND_NAME,) if settings.output_schiller_nn_value else (),
            copy_metadata=True,
            copy_geocoding=True,
            copy_time=True,
            copy_flag_codings=True,
            copy_flag_bands=True,
            copy_masks=True,
            copy_tie_point_grids=True,
        ),
        SelectionPolicy(
            SOURCE_INPUT,
            bands=tuple(settings.radiance_bands_to_copy)
            + ((ALTITUDE_BAND_NAME,) if apply_o2 else ()),
            copy_flag_bands=True,
        ),
        SelectionPolicy(RAD2REFL_STEP, bands=tuple(settings.reflectance_bands_to_copy)),
        SelectionPolicy(O2CORR_STEP, bands=tuple(O2_CORRECTION_BAND_NAMES), optional=True),
        SelectionPolicy(
            CLOUD_BUFFER_STEP,
            bands=(CLASSIF_BAND_NAME,),
            overrides=(CLASSIF_BAND_NAME,),
            copy_flag_codings=True,
            optional=True,
        ),
    ]

    virtual_bands: List[VirtualBandSpec] = []
    if apply_o2:
        virtual_bands = [
            VirtualBandSpec(
                name=SURFACE_PRESSURE_BAND_NAME,
                expression=SURFACE_PRESSURE_EXPRESSION,
                unit="hPa",
                description="estimated sea level pressure (p0=1013.25hPa, hScale=8.4km)",
                no_data_value=0.0,
            ),
            VirtualBandSpec(
                name=CLOUD_OVER_SNOW_BAND_NAME,
                expression=CLOUD_OVER_SNOW_EXPRESSION,
                unit="dl",
                description="Pixel identified as likely cloud over a snow/ice surface",
                no_data_value=0.0,
            ),
        ]

    return PipelineSpec(
        id=PIPELINE_ID,
        name="IdePix OLCI S3-SNOW",
        description="Pixel identification and classification with IdePix for OLCI, S3-SNOW variant",
        inputs=[
            InputSpec(SOURCE_INPUT, description="OLCI L1b product"),
            InputSpec(DEM_INPUT, required=False, description="DEM product for O2 correction"),
        ],
        steps=steps,
        merge=merge,
        virtual_bands=virtual_bands,
        target=TargetSpec(
            name_from=SOURCE_INPUT,
            name_suffix="_IDEPIX",
            product_type_from=CLASSIFICATION_STEP,
            auto_grouping=AUTO_GROUPING,
            mask_bands=[CLASSIF_BAND_NAME],
            mask_colors=dict(FLAG_COLORS),
        ),
        metadata={"settings": settings.model_dump(mode="json")},
    )


class OlciS3SnowProcessor:
    """
    Runs the S3-SNOW pipeline on an OLCI L1b product.

    The delegated OLCI algorithms are resolved through the stage registry,
    see register_olci_stages().

    Usage:
        registry = StageRegistry()
        register_olci_stages(registry, rad2refl=..., o2corr=..., classification=...)
        processor = OlciS3SnowProcessor(S3SnowSettings(), registry)
        product = processor.run(l1b, dem=None)
    """

    def __init__(
        self,
        settings: Optional[S3SnowSettings] = None,
        registry: Optional[StageRegistry] = None,
    ):
        self.settings = settings or S3SnowSettings()
        self.assembler = PipelineAssembler(registry)
        self.spec = build_s3snow_spec(self.settings)

    def create_pipeline(self) -> Pipeline:
        """Assemble a fresh pipeline with the input preconditions attached."""
        pipeline = self.assembler.assemble(self.spec)
        pipeline.add_input_check(self._check_inputs)
        return pipeline

    def _check_inputs(self, inputs: Dict[str, Any]) -> None:
        source = inputs[SOURCE_INPUT]
        validate_olci_product(
            source,
            require_altitude=self.settings.apply_o2_corrected_transmission,
        )
        validate_dem_product(inputs.get(DEM_INPUT), source, self.settings.dem_band_name)

    def validate(self, source: Product, dem: Optional[Product] = None) -> Pipeline:
        """
        Validate inputs and wiring without running any stage.

        Returns:
            The validated pipeline, ready to run with the same inputs
        """
        pipeline = self.create_pipeline()
        pipeline.validate({SOURCE_INPUT: source, DEM_INPUT: dem})
        return pipeline

    def run(self, source: Product, dem: Optional[Product] = None) -> Product:
        """
        Run the pipeline.

        Args:
            source: OLCI L1b source product
            dem: Optional DEM product

        Returns:
            The IdePix product '<source name>_IDEPIX'
        """
        logger.info(f"Running {PIPELINE_ID} on '{source.name}'")
        pipeline = self.validate(source, dem)
        return pipeline.run({SOURCE_INPUT: source, DEM_INPUT: dem})
