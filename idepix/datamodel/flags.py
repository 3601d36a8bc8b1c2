"""
Flag/Bitmask Registry.

Named boolean flags packed into integer flag bands. A registry holds one
flag coding per flag band and provides:
- registration with overlap detection (bits within one band are disjoint)
- composition of codings defined by different stages
- rendering of a flag band from per-flag boolean predicates
- bit-test predicates for the expression evaluator
- mask definitions (one per flag) for the final product
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np

from idepix.errors import DefinitionError

logger = logging.getLogger(__name__)

Color = Tuple[int, int, int]

# Colours cycled for flags without an explicit colour
DEFAULT_PALETTE: List[Color] = [
    (255, 0, 0),
    (255, 0, 255),
    (0, 255, 255),
    (255, 200, 0),
    (0, 0, 255),
    (128, 0, 128),
    (0, 255, 0),
    (255, 128, 0),
    (128, 128, 128),
    (0, 128, 128),
    (128, 64, 0),
]


@dataclass(frozen=True)
class FlagDefinition:
    """
    A named flag within a flag band.

    Attributes:
        name: Flag name (unique within its band)
        mask: Bit mask value of the flag
        description: Human-readable description
    """
    name: str
    mask: int
    description: str = ""

    @property
    def bit(self) -> Optional[int]:
        """Bit position for single-bit flags, None otherwise."""
        if self.mask > 0 and self.mask & (self.mask - 1) == 0:
            return self.mask.bit_length() - 1
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {"name": self.name, "mask": self.mask, "bit": self.bit, "description": self.description}


@dataclass(frozen=True)
class Mask:
    """
    A named boolean mask defined by an expression over the product namespace.

    Attributes:
        name: Mask name
        expression: Boolean expression, e.g. 'pixel_classif_flags.IDEPIX_LAND'
        description: Human-readable description
        color: Display colour (RGB)
        transparency: Display transparency (0 opaque, 1 invisible)
    """
    name: str
    expression: str
    description: str = ""
    color: Color = (128, 128, 128)
    transparency: float = 0.5

    def __post_init__(self):
        if not 0.0 <= self.transparency <= 1.0:
            raise ValueError(f"transparency must be between 0.0 and 1.0, got {self.transparency}")


class FlagCoding:
    """Ordered set of flags packed into one integer band."""

    def __init__(self, band_name: str, flags: Iterable[FlagDefinition] = ()):
        self.band_name = band_name
        self._flags: Dict[str, FlagDefinition] = {}
        for flag in flags:
            self.add(flag)

    def add(self, flag: FlagDefinition) -> FlagDefinition:
        """
        Add a flag to the coding.

        Re-adding an identical flag is a no-op.

        Raises:
            DefinitionError: If the name is taken by a different mask or the
                mask overlaps the bits of another flag
        """
        if flag.mask <= 0:
            raise DefinitionError(
                f"Flag '{flag.name}' must have a positive mask, got {flag.mask}",
                band_name=self.band_name,
            )

        existing = self._flags.get(flag.name)
        if existing is not None:
            if existing.mask == flag.mask:
                return existing
            raise DefinitionError(
                f"Flag '{flag.name}' already defined with mask {existing.mask}, "
                f"cannot redefine with mask {flag.mask}",
                band_name=self.band_name,
            )

        for other in self._flags.values():
            if other.mask & flag.mask:
                raise DefinitionError(
                    f"Flag '{flag.name}' (mask {flag.mask}) overlaps flag "
                    f"'{other.name}' (mask {other.mask})",
                    band_name=self.band_name,
                )

        self._flags[flag.name] = flag
        return flag

    def get(self, name: str) -> Optional[FlagDefinition]:
        """Get flag by name."""
        return self._flags.get(name)

    @property
    def flags(self) -> List[FlagDefinition]:
        """Flags in registration order."""
        return list(self._flags.values())

    @property
    def flag_names(self) -> List[str]:
        return list(self._flags)

    @property
    def used_mask(self) -> int:
        """Union of all flag masks."""
        used = 0
        for flag in self._flags.values():
            used |= flag.mask
        return used

    def copy(self) -> "FlagCoding":
        return FlagCoding(self.band_name, self._flags.values())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "band_name": self.band_name,
            "flags": [f.to_dict() for f in self._flags.values()],
        }

    def __len__(self) -> int:
        return len(self._flags)

    def __contains__(self, name: str) -> bool:
        return name in self._flags

    def __repr__(self) -> str:
        return f"FlagCoding(band='{self.band_name}', flags={self.flag_names})"


class FlagRegistry:
    """
    Registry of flag codings keyed by flag band name.

    Usage:
        registry = FlagRegistry()
        registry.register("pixel_classif_flags", "IDEPIX_LAND", bit=10)
        flags = registry.render(
            "pixel_classif_flags", {"IDEPIX_LAND": land_mask}, shape=land_mask.shape
        )
        is_land = registry.bit_test("pixel_classif_flags", "IDEPIX_LAND")(flags)
    """

    def __init__(self):
        self._codings: Dict[str, FlagCoding] = {}

    # --- Registration ---

    def register(
        self,
        band_name: str,
        flag_name: str,
        bit: Optional[int] = None,
        mask: Optional[int] = None,
        description: str = "",
    ) -> FlagDefinition:
        """
        Register a flag against a flag band.

        Args:
            band_name: Backing integer band
            flag_name: Flag name
            bit: Bit position (exclusive with mask)
            mask: Explicit mask value (exclusive with bit)
            description: Flag description

        Returns:
            The registered flag definition

        Raises:
            DefinitionError: If the flag overlaps an existing flag of the band
        """
        if (bit is None) == (mask is None):
            raise ValueError("Exactly one of 'bit' or 'mask' must be given")
        if bit is not None:
            if not 0 <= bit < 63:
                raise DefinitionError(f"Bit position {bit} out of range for flag '{flag_name}'", band_name=band_name)
            mask = 1 << bit

        coding = self._codings.setdefault(band_name, FlagCoding(band_name))
        flag = coding.add(FlagDefinition(flag_name, mask, description))
        logger.debug(f"Registered flag {band_name}.{flag_name} (mask {mask})")
        return flag

    def add_coding(self, coding: FlagCoding) -> None:
        """Register every flag of a coding."""
        for flag in coding.flags:
            self.register(coding.band_name, flag.name, mask=flag.mask, description=flag.description)

    def merge(self, other: "FlagRegistry", band_names: Optional[Iterable[str]] = None) -> None:
        """
        Compose the codings of another registry into this one.

        Args:
            other: Registry to merge from
            band_names: Restrict to these flag bands (all if None)

        Raises:
            DefinitionError: On overlapping or conflicting flags
        """
        names = other.band_names if band_names is None else band_names
        for name in names:
            coding = other.coding(name)
            if coding is not None:
                self.add_coding(coding)

    def copy(self) -> "FlagRegistry":
        clone = FlagRegistry()
        for name, coding in self._codings.items():
            clone._codings[name] = coding.copy()
        return clone

    # --- Lookup ---

    @property
    def band_names(self) -> List[str]:
        """Names of all flag bands with a coding."""
        return list(self._codings)

    def coding(self, band_name: str) -> Optional[FlagCoding]:
        return self._codings.get(band_name)

    def has_coding(self, band_name: str) -> bool:
        return band_name in self._codings

    def resolve(self, band_name: str, flag_name: str) -> Optional[int]:
        """Mask of a flag, or None if undefined."""
        coding = self._codings.get(band_name)
        if coding is None:
            return None
        flag = coding.get(flag_name)
        return flag.mask if flag else None

    def _require(self, band_name: str, flag_name: str) -> int:
        mask = self.resolve(band_name, flag_name)
        if mask is None:
            raise DefinitionError(f"Undefined flag '{flag_name}'", band_name=band_name)
        return mask

    # --- Pixel operations ---

    def render(
        self,
        band_name: str,
        predicates: Mapping[str, np.ndarray],
        shape: Tuple[int, int],
        dtype: str = "int32",
    ) -> np.ndarray:
        """
        Pack per-flag boolean predicates into a flag band.

        Flags without a predicate are left unset.

        Args:
            band_name: Flag band whose coding is used
            predicates: Flag name -> boolean array
            shape: Raster shape (rows, cols)
            dtype: Integer pixel type of the flag band

        Returns:
            Integer array with the flag bits set

        Raises:
            DefinitionError: If a predicate names an undefined flag
                or the coding does not fit the pixel type
            ValueError: If a predicate does not match the raster shape
        """
        coding = self._codings.get(band_name)
        if coding is not None:
            _check_pixel_type(band_name, coding.used_mask, np.dtype(dtype))
        values = np.zeros(shape, dtype=dtype)
        for flag_name, predicate in predicates.items():
            values = self.set_flag(values, band_name, flag_name, predicate)
        return values

    def set_flag(
        self,
        values: np.ndarray,
        band_name: str,
        flag_name: str,
        predicate: np.ndarray,
    ) -> np.ndarray:
        """
        Return a copy of a flag band with a flag set where the predicate holds.

        Raises:
            DefinitionError: If the flag band is not integer typed or the
                flag mask does not fit its pixel type
        """
        mask = self._require(band_name, flag_name)
        _check_pixel_type(band_name, mask, values.dtype)
        predicate = np.asarray(predicate, dtype=bool)
        if predicate.shape != values.shape:
            raise ValueError(
                f"Predicate for {band_name}.{flag_name} has shape {predicate.shape}, "
                f"expected {values.shape}"
            )
        result = np.array(values, copy=True)
        result[predicate] |= np.asarray(mask, dtype=result.dtype)
        return result

    def bit_test(self, band_name: str, flag_name: str) -> Callable[[np.ndarray], np.ndarray]:
        """
        Vectorised predicate testing a flag on flag band samples.

        Raises:
            DefinitionError: If the flag is undefined
        """
        mask = self._require(band_name, flag_name)

        def test(values: np.ndarray) -> np.ndarray:
            return (np.asarray(values).astype(np.int64) & mask) == mask

        return test

    # --- Masks and description ---

    def create_masks(
        self,
        band_name: str,
        colors: Optional[Mapping[str, Color]] = None,
        transparency: float = 0.5,
    ) -> List[Mask]:
        """
        Create one mask definition per flag of a flag band.

        Args:
            band_name: Flag band
            colors: Optional flag name -> colour overrides
            transparency: Mask transparency

        Returns:
            List of Mask in flag registration order
        """
        coding = self._codings.get(band_name)
        if coding is None:
            raise DefinitionError("No flag coding registered", band_name=band_name)

        colors = colors or {}
        masks = []
        for i, flag in enumerate(coding.flags):
            masks.append(Mask(
                name=flag.name,
                expression=f"{band_name}.{flag.name}",
                description=flag.description,
                color=colors.get(flag.name, DEFAULT_PALETTE[i % len(DEFAULT_PALETTE)]),
                transparency=transparency,
            ))
        return masks

    def describe(self) -> Dict[str, List[Dict[str, Any]]]:
        """All named flags grouped by flag band."""
        return {
            name: [flag.to_dict() for flag in coding.flags]
            for name, coding in self._codings.items()
        }

    def __len__(self) -> int:
        return sum(len(c) for c in self._codings.values())

    def __repr__(self) -> str:
        return f"FlagRegistry(bands={self.band_names}, flags={len(self)})"


def _check_pixel_type(band_name: str, mask: int, dtype: np.dtype) -> None:
    if not np.issubdtype(dtype, np.integer):
        raise DefinitionError(f"Flag band has non-integer type {dtype}", band_name=band_name)
    if mask > np.iinfo(dtype).max:
        raise DefinitionError(
            f"Flag mask {mask} does not fit pixel type {dtype}",
            band_name=band_name,
        )
