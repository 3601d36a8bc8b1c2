"""
Configuration using Pydantic Settings.

Provides the configuration surface of the S3-SNOW pipeline with environment
variable loading (prefix IDEPIX_S3SNOW_), YAML loading and validation at
construction time, plus the logging setup used by hosts.
"""

import logging
import sys
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, List, Union

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from idepix.analysis.library.olci.constants import (
    RADIANCE_BAND_NAMES,
    REFLECTANCE_BAND_NAMES,
)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class S3SnowSettings(BaseSettings):
    """Settings of the IdePix OLCI S3-SNOW pipeline."""

    model_config = SettingsConfigDict(
        env_prefix="IDEPIX_S3SNOW_",
        env_file=".env",
        extra="ignore",
    )

    apply_o2_corrected_transmission: bool = Field(
        default=True,
        description="Apply O2 correction and write the O2 corrected transmission",
    )
    compute_cloud_buffer: bool = Field(
        default=True, description="Compute a cloud buffer"
    )
    cloud_buffer_width: int = Field(
        default=2,
        ge=0,
        le=100,
        description="Width of the cloud 'safety buffer' around cloudy pixels",
    )
    dem_band_name: str = Field(
        default="band_1",
        min_length=1,
        description="Name of the altitude band in the optional DEM product",
    )
    radiance_bands_to_copy: Annotated[List[str], NoDecode] = Field(
        default_factory=list,
        description="TOA radiance bands copied to the target product",
    )
    reflectance_bands_to_copy: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["Oa21_reflectance"],
        description="TOA reflectance bands copied to the target product",
    )
    output_schiller_nn_value: bool = Field(
        default=False, description="Write the Schiller NN value to the target product"
    )
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")

    @field_validator("radiance_bands_to_copy", "reflectance_bands_to_copy", mode="before")
    @classmethod
    def parse_list(cls, v: Any) -> List[str]:
        """Parse comma-separated lists from environment variables."""
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v or []

    @field_validator("radiance_bands_to_copy")
    @classmethod
    def check_radiance_bands(cls, v: List[str]) -> List[str]:
        return _check_band_names(v, RADIANCE_BAND_NAMES)

    @field_validator("reflectance_bands_to_copy")
    @classmethod
    def check_reflectance_bands(cls, v: List[str]) -> List[str]:
        return _check_band_names(v, REFLECTANCE_BAND_NAMES)

    @classmethod
    def from_yaml(cls, yaml_path: Union[str, Path]) -> "S3SnowSettings":
        """Load settings from a YAML mapping of field names to values."""
        with open(yaml_path, "r") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Settings file {yaml_path} does not contain a mapping")
        return cls(**data)


def _check_band_names(names: List[str], allowed: List[str]) -> List[str]:
    invalid = [name for name in names if name not in allowed]
    if invalid:
        raise ValueError(f"Unknown band names {invalid}; allowed are {allowed[0]} .. {allowed[-1]}")
    if len(set(names)) != len(names):
        raise ValueError("Band names must not repeat")
    return names


def configure_logging(level: Union[LogLevel, str, int] = LogLevel.INFO) -> None:
    """Configure root logging to stdout."""
    if isinstance(level, LogLevel):
        level = level.value
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
