"""
Product Merger.

Assembles one target product from an ordered list of source products.
Each source comes with an explicit SelectionPolicy declaring which bands
and which metadata facets are copied, and which existing bands it may
override. Name collisions that no policy permits are definition errors,
so an additive source can never silently replace a band produced by an
earlier source.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from idepix.datamodel.product import Band, Product, VirtualBand
from idepix.errors import DefinitionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SelectionPolicy:
    """
    What to copy from one source product.

    Attributes:
        label: Name of the source (stage id or input name) for messages
        bands: Allow-list of bands to copy
        overrides: Bands this source may replace in the target
        copy_metadata: Deep-merge the metadata tree
        copy_geocoding: Copy geocoding
        copy_time: Copy start/end time
        copy_flag_codings: Compose flag codings into the target
        copy_flag_bands: Copy every flag band (and its coding)
        copy_masks: Copy mask definitions
        copy_tie_point_grids: Copy tie-point grids
        optional: Source may be absent (e.g. a skipped optional stage)
    """
    label: str
    bands: Tuple[str, ...] = ()
    overrides: Tuple[str, ...] = ()
    copy_metadata: bool = False
    copy_geocoding: bool = False
    copy_time: bool = False
    copy_flag_codings: bool = False
    copy_flag_bands: bool = False
    copy_masks: bool = False
    copy_tie_point_grids: bool = False
    optional: bool = False

    def __post_init__(self):
        object.__setattr__(self, "bands", tuple(self.bands))
        object.__setattr__(self, "overrides", tuple(self.overrides))
        if len(set(self.bands)) != len(self.bands):
            raise DefinitionError(f"Selection '{self.label}' lists a band twice")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SelectionPolicy":
        """
        Create from dictionary representation.

        Expected format:
            from: classification
            bands: [nn_value]
            overrides: []
            copy: [metadata, geocoding, time, flag_codings, flag_bands, masks, tie_point_grids]
            optional: false
        """
        facets = set(data.get("copy", []))
        unknown = facets - set(COPY_FACETS)
        if unknown:
            raise DefinitionError(f"Unknown copy facets {sorted(unknown)} for source '{data['from']}'")
        return cls(
            label=data["from"],
            bands=tuple(data.get("bands", [])),
            overrides=tuple(data.get("overrides", [])),
            optional=data.get("optional", False),
            **{f"copy_{facet}": True for facet in facets},
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "from": self.label,
            "bands": list(self.bands),
            "overrides": list(self.overrides),
            "copy": [f for f in COPY_FACETS if getattr(self, f"copy_{f}")],
            "optional": self.optional,
        }


COPY_FACETS = (
    "metadata",
    "geocoding",
    "time",
    "flag_codings",
    "flag_bands",
    "masks",
    "tie_point_grids",
)


@dataclass
class MergeReport:
    """Which source each target band came from."""
    band_sources: Dict[str, str] = field(default_factory=dict)
    overridden: List[str] = field(default_factory=list)


class ProductMerger:
    """
    Copies selected content of source products into a target product.

    Usage:
        target = Product("S3A_..._IDEPIX", "IDEPIX_OLCI", width, height)
        merger = ProductMerger(target)
        merger.merge([
            (classification, SelectionPolicy("classification", copy_flag_bands=True)),
            (rad2refl, SelectionPolicy("rad2refl", bands=("Oa21_reflectance",))),
        ])
    """

    def __init__(self, target: Product):
        self.target = target
        self.report = MergeReport()

    def merge(self, sources: Sequence[Tuple[Optional[Product], SelectionPolicy]]) -> Product:
        """
        Merge sources into the target in order.

        Args:
            sources: Ordered (product, policy) pairs; a None product is only
                allowed for optional policies and is skipped

        Returns:
            The target product

        Raises:
            DefinitionError: On missing selected bands, size mismatches or
                band collisions not permitted by the policy
        """
        for product, policy in sources:
            if product is None:
                if not policy.optional:
                    raise DefinitionError(f"Required merge source '{policy.label}' is absent")
                logger.debug(f"Skipping absent optional merge source '{policy.label}'")
                continue
            self._merge_one(product, policy)

        logger.info(
            f"Merged {len(self.report.band_sources)} bands into '{self.target.name}'"
        )
        return self.target

    def _merge_one(self, source: Product, policy: SelectionPolicy) -> None:
        target = self.target
        if source.raster_shape != target.raster_shape:
            raise DefinitionError(
                f"Source '{policy.label}' raster {source.raster_shape} does not match "
                f"target raster {target.raster_shape}"
            )

        if policy.copy_metadata:
            _deep_merge(target.metadata, source.metadata)
        if policy.copy_geocoding:
            target.geocoding = source.geocoding
        if policy.copy_time:
            target.start_time = source.start_time
            target.end_time = source.end_time
        if policy.copy_tie_point_grids:
            for name, grid in source.tie_point_grids.items():
                target.tie_point_grids.setdefault(name, grid)

        selected: List[str] = []
        if policy.copy_flag_bands:
            selected.extend(b.name for b in source.flag_bands)
        for name in policy.bands:
            if name in selected:
                continue
            if not source.has_band(name):
                raise DefinitionError(
                    f"Selected band not found in source '{policy.label}'",
                    band_name=name,
                )
            selected.append(name)

        codings = set()
        if policy.copy_flag_codings:
            codings.update(source.flags.band_names)
        for name in selected:
            coding_name = source.get_band(name).flag_coding_name
            if coding_name:
                codings.add(coding_name)
        target.flags.merge(source.flags, [c for c in source.flags.band_names if c in codings])

        for name in selected:
            self._copy_band(source.get_band(name), policy)

        if policy.copy_masks:
            for mask in source.masks:
                if target.has_mask(mask.name):
                    if target.get_mask(mask.name).expression != mask.expression:
                        raise DefinitionError(
                            f"Mask '{mask.name}' from '{policy.label}' conflicts with an existing mask",
                            expression=mask.expression,
                        )
                    continue
                target.add_mask(mask)

    def _copy_band(self, band: Band, policy: SelectionPolicy) -> None:
        target = self.target
        clone = band.copy()

        if target.has_band(band.name):
            if band.name not in policy.overrides:
                raise DefinitionError(
                    f"Band from '{policy.label}' collides with band from "
                    f"'{self.report.band_sources.get(band.name, target.name)}'",
                    band_name=band.name,
                )
            if isinstance(clone, VirtualBand):
                clone.bind(target)
            target.replace_band(clone)
            self.report.overridden.append(band.name)
            logger.debug(f"Band '{band.name}' overridden by '{policy.label}'")
        else:
            target.add_band(clone)
            logger.debug(f"Copied band '{band.name}' from '{policy.label}'")

        self.report.band_sources[band.name] = policy.label


def _deep_merge(target: Dict[str, Any], source: Dict[str, Any]) -> None:
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)
