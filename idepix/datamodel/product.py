"""
Raster Product data model.

A Product is a named collection of 2-D bands sharing raster size, geocoding
and time metadata. Bands are either stored (concrete samples) or virtual
(computed on demand from an expression over other bands of the product).

Products are never mutated by their consumers: band samples are stored as
read-only arrays and downstream code copies from a product rather than
modifying it.
"""

import copy
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np

from idepix.datamodel.flags import FlagRegistry, Mask
from idepix.errors import DefinitionError
from idepix.expression import BoundExpression, Window, bind, window_shape

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeoCoding:
    """
    Pixel-to-geographic mapping shared by all bands of a product.

    Attributes:
        crs: Coordinate reference system identifier (e.g. 'EPSG:4326')
        transform: Affine transform coefficients (a, b, c, d, e, f)
    """
    crs: str = "EPSG:4326"
    transform: Tuple[float, ...] = (1.0, 0.0, 0.0, 0.0, -1.0, 0.0)

    def pixel_to_geo(self, x: float, y: float) -> Tuple[float, float]:
        """Map pixel centre coordinates to (lon, lat)."""
        a, b, c, d, e, f = self.transform
        return (a * x + b * y + c, d * x + e * y + f)


@dataclass(frozen=True)
class BandSpec:
    """
    Descriptor of a band: everything but its samples.

    Attributes:
        name: Band name (unique within a product)
        data_type: numpy dtype name of the samples
        unit: Physical unit
        description: Human-readable description
        no_data_value: Value marking missing samples
        no_data_value_used: Whether no_data_value is honoured
    """
    name: str
    data_type: str = "float32"
    unit: Optional[str] = None
    description: Optional[str] = None
    no_data_value: Optional[float] = None
    no_data_value_used: bool = False

    def __post_init__(self):
        np.dtype(self.data_type)
        if self.no_data_value_used and self.no_data_value is None:
            raise ValueError(f"Band '{self.name}' uses no-data but defines no no_data_value")

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(self.data_type)

    @property
    def is_floating_point(self) -> bool:
        return self.dtype.kind == "f"

    def no_data_mask(self, values: np.ndarray) -> np.ndarray:
        """Boolean array marking no-data samples (NaN aware)."""
        if not self.no_data_value_used:
            if self.is_floating_point:
                return np.isnan(values)
            return np.zeros(np.shape(values), dtype=bool)
        if np.isnan(self.no_data_value):
            return np.isnan(values)
        return values == self.no_data_value

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "data_type": self.data_type,
            "unit": self.unit,
            "description": self.description,
            "no_data_value": self.no_data_value,
            "no_data_value_used": self.no_data_value_used,
        }


class Band:
    """
    A band with stored samples.

    A band created without data is *declared*: it carries its descriptor so
    that wiring can be checked, but reading it is an error.
    """

    def __init__(
        self,
        spec: BandSpec,
        data: Optional[np.ndarray] = None,
        flag_coding_name: Optional[str] = None,
    ):
        self.spec = spec
        self.flag_coding_name = flag_coding_name
        self._data: Optional[np.ndarray] = None
        if data is not None:
            values = np.array(data, dtype=spec.dtype)
            if values.ndim != 2:
                raise ValueError(f"Band '{spec.name}' data must be 2D, got {values.ndim}D")
            values.setflags(write=False)
            self._data = values
        self._shape: Optional[Tuple[int, int]] = None if self._data is None else self._data.shape

    @classmethod
    def declared(
        cls,
        spec: BandSpec,
        shape: Tuple[int, int],
        flag_coding_name: Optional[str] = None,
    ) -> "Band":
        """Create a band that declares its contract but holds no samples."""
        band = cls(spec, flag_coding_name=flag_coding_name)
        band._shape = tuple(shape)
        return band

    # --- Descriptor shortcuts ---

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def data_type(self) -> str:
        return self.spec.data_type

    @property
    def unit(self) -> Optional[str]:
        return self.spec.unit

    @property
    def description(self) -> Optional[str]:
        return self.spec.description

    @property
    def no_data_value(self) -> Optional[float]:
        return self.spec.no_data_value

    @property
    def no_data_value_used(self) -> bool:
        return self.spec.no_data_value_used

    @property
    def shape(self) -> Optional[Tuple[int, int]]:
        """Raster shape (rows, cols)."""
        return self._shape

    @property
    def is_declared(self) -> bool:
        """True if the band carries no samples."""
        return self._data is None

    @property
    def is_flag_band(self) -> bool:
        return self.flag_coding_name is not None

    # --- Sample access ---

    def read(self, window: Optional[Window] = None) -> np.ndarray:
        """
        Read samples.

        Args:
            window: (row_slice, col_slice) or None for the whole band

        Returns:
            Read-only array of samples
        """
        if self._data is None:
            raise DefinitionError("Band is declared only and holds no samples", band_name=self.name)
        if window is None:
            return self._data
        return self._data[window]

    def get_pixel(self, x: int, y: int) -> Union[int, float]:
        """Sample value at pixel (x, y)."""
        return self.read((slice(y, y + 1), slice(x, x + 1)))[0, 0].item()

    def no_data_mask(self, values: np.ndarray) -> np.ndarray:
        return self.spec.no_data_mask(values)

    def valid_mask(self, window: Optional[Window] = None) -> np.ndarray:
        """Boolean array of samples that are not no-data."""
        return ~self.no_data_mask(self.read(window))

    def copy(self) -> "Band":
        """Shallow copy sharing the read-only samples."""
        clone = Band(self.spec, flag_coding_name=self.flag_coding_name)
        clone._data = self._data
        clone._shape = self._shape
        return clone

    def __repr__(self) -> str:
        state = "declared" if self.is_declared else "stored"
        return f"Band(name='{self.name}', type={self.data_type}, {state})"


class VirtualBand(Band):
    """
    A band computed on demand from an expression.

    The expression is bound when the band is added to a product; references
    may only name bands (and flags) already present in that product.
    The full-raster result is cached after the first complete read.
    """

    def __init__(self, spec: BandSpec, expression: str):
        super().__init__(spec)
        self.expression = expression
        self._bound: Optional[BoundExpression] = None
        self._cache: Optional[np.ndarray] = None

    @property
    def is_declared(self) -> bool:
        return False

    @property
    def is_bound(self) -> bool:
        return self._bound is not None

    @property
    def bound_expression(self) -> Optional[BoundExpression]:
        return self._bound

    def bind(self, namespace: "Product") -> None:
        """
        Resolve the expression against a product namespace.

        Raises:
            DefinitionError: On undefined band or flag references
        """
        try:
            self._bound = bind(self.expression, namespace)
        except DefinitionError as exc:
            raise DefinitionError(
                exc.message,
                band_name=self.name,
                expression=self.expression,
            ) from exc
        self._shape = namespace.raster_shape
        self._cache = None

    def read(self, window: Optional[Window] = None) -> np.ndarray:
        if self._bound is None:
            raise DefinitionError("Virtual band is not bound to a product", band_name=self.name)
        if self._cache is not None:
            return self._cache if window is None else self._cache[window]
        if any(b.is_declared for b in self._bound.bands):
            raise DefinitionError(
                "Virtual band references declared-only bands",
                band_name=self.name,
                expression=self.expression,
            )

        values = self._bound.evaluate(
            window,
            dtype=self.data_type,
            no_data_value=self.no_data_value if self.no_data_value_used else None,
        )
        values.setflags(write=False)
        if window is None:
            self._cache = values
        return values

    def copy(self) -> "VirtualBand":
        """Unbound copy carrying the same expression."""
        return VirtualBand(self.spec, self.expression)

    def __repr__(self) -> str:
        return f"VirtualBand(name='{self.name}', expression='{self.expression}')"


class Product:
    """
    Named multi-band raster with shared geometry and metadata.

    Attributes:
        name: Product name
        product_type: Product type tag (e.g. 'OL_1_EFR')
        width: Raster width (columns)
        height: Raster height (rows)
        geocoding: Shared geocoding
        start_time: Sensing start
        end_time: Sensing end
        flags: Flag codings of the product's flag bands
        metadata: Free-form metadata tree
        tie_point_grids: Named tie-point grids
        auto_grouping: Band grouping pattern for display
    """

    def __init__(
        self,
        name: str,
        product_type: str,
        width: int,
        height: int,
        geocoding: Optional[GeoCoding] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ):
        if width <= 0 or height <= 0:
            raise ValueError(f"Product '{name}' must have a positive size, got {width}x{height}")

        self.name = name
        self.product_type = product_type
        self.width = width
        self.height = height
        self.geocoding = geocoding
        self.start_time = start_time
        self.end_time = end_time
        self.flags = FlagRegistry()
        self.metadata: Dict[str, Any] = {}
        self.tie_point_grids: Dict[str, np.ndarray] = {}
        self.auto_grouping: Optional[str] = None

        self._bands: Dict[str, Band] = {}
        self._masks: Dict[str, Mask] = {}
        self._mask_expressions: Dict[str, BoundExpression] = {}

    # --- Namespace ---

    @property
    def raster_shape(self) -> Tuple[int, int]:
        """Raster shape (rows, cols)."""
        return (self.height, self.width)

    def resolve_band(self, name: str) -> Optional[Band]:
        return self._bands.get(name)

    def resolve_flag(self, band_name: str, flag_name: str) -> Optional[int]:
        band = self._bands.get(band_name)
        if band is None or band.flag_coding_name is None:
            return None
        return self.flags.resolve(band.flag_coding_name, flag_name)

    # --- Bands ---

    def add_band(self, band: Band) -> Band:
        """
        Add a band.

        Virtual bands are bound against the bands already present.

        Raises:
            DefinitionError: On duplicate names, size mismatches or
                undefined virtual-band references
        """
        if band.name in self._bands:
            raise DefinitionError(
                f"Band already exists in product '{self.name}'",
                band_name=band.name,
            )
        if isinstance(band, VirtualBand):
            band.bind(self)
        elif band.shape != self.raster_shape:
            raise DefinitionError(
                f"Band shape {band.shape} does not match product '{self.name}' "
                f"raster {self.raster_shape}",
                band_name=band.name,
            )
        if band.flag_coding_name is not None and not self.flags.has_coding(band.flag_coding_name):
            raise DefinitionError(
                f"Flag band references unknown flag coding '{band.flag_coding_name}'",
                band_name=band.name,
            )

        self._bands[band.name] = band
        logger.debug(f"Added band '{band.name}' to product '{self.name}'")
        return band

    def add_stored_band(
        self,
        spec: BandSpec,
        data: np.ndarray,
        flag_coding_name: Optional[str] = None,
    ) -> Band:
        """Create and add a band holding the given samples."""
        return self.add_band(Band(spec, data, flag_coding_name=flag_coding_name))

    def add_virtual_band(self, spec: BandSpec, expression: str) -> VirtualBand:
        """Create, bind and add a virtual band."""
        band = VirtualBand(spec, expression)
        self.add_band(band)
        return band

    def replace_band(self, band: Band) -> Band:
        """
        Replace an existing band of the same name, keeping its position.

        Virtual bands and masks reading the replaced band, directly or
        through other virtual bands, are rebound to the new band.
        """
        if band.name not in self._bands:
            raise DefinitionError(f"Cannot replace missing band in '{self.name}'", band_name=band.name)
        if band.shape != self.raster_shape:
            raise DefinitionError(
                f"Band shape {band.shape} does not match product '{self.name}' "
                f"raster {self.raster_shape}",
                band_name=band.name,
            )
        self._bands[band.name] = band
        logger.debug(f"Replaced band '{band.name}' in product '{self.name}'")
        self._rebind_dependents(band.name)
        return band

    def _rebind_dependents(self, name: str) -> None:
        stale = {name}
        for band in self._bands.values():
            if not isinstance(band, VirtualBand) or not band.is_bound or band.name in stale:
                continue
            if stale.intersection(band.bound_expression.band_references):
                band.bind(self)
                stale.add(band.name)
        for mask_name, bound in self._mask_expressions.items():
            if stale.intersection(bound.band_references):
                self._mask_expressions[mask_name] = bind(self._masks[mask_name].expression, self)
                logger.debug(f"Rebound mask '{mask_name}' in product '{self.name}'")

    def get_band(self, name: str) -> Band:
        """
        Get band by name.

        Raises:
            KeyError: If the band does not exist
        """
        if name not in self._bands:
            raise KeyError(f"Band '{name}' not found in product '{self.name}'")
        return self._bands[name]

    def has_band(self, name: str) -> bool:
        return name in self._bands

    @property
    def bands(self) -> List[Band]:
        return list(self._bands.values())

    @property
    def band_names(self) -> List[str]:
        return list(self._bands)

    @property
    def flag_bands(self) -> List[Band]:
        """Bands carrying a flag coding."""
        return [b for b in self._bands.values() if b.is_flag_band]

    @property
    def virtual_bands(self) -> List[VirtualBand]:
        return [b for b in self._bands.values() if isinstance(b, VirtualBand)]

    # --- Masks ---

    def add_mask(self, mask: Mask) -> Mask:
        """
        Add a mask definition; its expression is bound immediately.

        Raises:
            DefinitionError: On duplicate names or undefined references
        """
        if mask.name in self._masks:
            raise DefinitionError(f"Mask '{mask.name}' already exists in product '{self.name}'")
        try:
            bound = bind(mask.expression, self)
        except DefinitionError as exc:
            raise DefinitionError(
                f"Invalid mask '{mask.name}': {exc.message}",
                band_name=exc.band_name,
                expression=mask.expression,
            ) from exc
        self._masks[mask.name] = mask
        self._mask_expressions[mask.name] = bound
        return mask

    def get_mask(self, name: str) -> Mask:
        if name not in self._masks:
            raise KeyError(f"Mask '{name}' not found in product '{self.name}'")
        return self._masks[name]

    def has_mask(self, name: str) -> bool:
        return name in self._masks

    @property
    def masks(self) -> List[Mask]:
        return list(self._masks.values())

    def read_mask(self, name: str, window: Optional[Window] = None) -> np.ndarray:
        """Evaluate a mask to a boolean array."""
        self.get_mask(name)
        values = self._mask_expressions[name].evaluate(window, dtype="uint8", no_data_value=0)
        return values.astype(bool)

    # --- Copies ---

    def declared_copy(self) -> "Product":
        """
        Copy of the product with every band declared only.

        Used to check wiring without touching samples.
        """
        clone = Product(
            self.name, self.product_type, self.width, self.height,
            geocoding=self.geocoding, start_time=self.start_time, end_time=self.end_time,
        )
        clone.flags = self.flags.copy()
        clone.metadata = copy.deepcopy(self.metadata)
        clone.tie_point_grids = dict(self.tie_point_grids)
        clone.auto_grouping = self.auto_grouping
        for band in self._bands.values():
            clone._bands[band.name] = Band.declared(band.spec, self.raster_shape, band.flag_coding_name)
        for mask in self._masks.values():
            clone.add_mask(mask)
        return clone

    def window_shape(self, window: Optional[Window]) -> Tuple[int, int]:
        return window_shape(self.raster_shape, window)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation (without samples)."""
        return {
            "name": self.name,
            "product_type": self.product_type,
            "width": self.width,
            "height": self.height,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "bands": [
                {**b.spec.to_dict(), "expression": getattr(b, "expression", None)}
                for b in self._bands.values()
            ],
            "flags": self.flags.describe(),
            "masks": [m.name for m in self._masks.values()],
            "auto_grouping": self.auto_grouping,
        }

    def __contains__(self, name: str) -> bool:
        return name in self._bands

    def __repr__(self) -> str:
        return (
            f"Product(name='{self.name}', type='{self.product_type}', "
            f"size={self.width}x{self.height}, bands={len(self._bands)})"
        )
