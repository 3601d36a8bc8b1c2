"""
Tests for the product merger.

Tests cover:
- Band allow-lists and flag band copying
- Collision detection and explicit overrides
- Optional and required sources
- Metadata, time, tie-point grid and mask facets
- Dictionary form of selection policies
"""

from datetime import datetime, timezone

import numpy as np
import pytest

from idepix.datamodel import BandSpec, Mask, Product, ProductMerger, SelectionPolicy
from idepix.errors import DefinitionError


def make_source(name, bands, shape=(2, 2), fill=1.0):
    product = Product(name, "TEST", width=shape[1], height=shape[0])
    for band_name in bands:
        product.add_stored_band(BandSpec(band_name), np.full(shape, fill))
    return product


@pytest.fixture
def target():
    """Empty target product."""
    return Product("S3A_TEST_IDEPIX", "IDEPIX_OLCI", width=2, height=2)


@pytest.fixture
def classification():
    """Classification-like product with a flag band, metadata and a mask."""
    product = make_source("classif", ["nn_value"])
    product.flags.register("pixel_classif_flags", "IDEPIX_LAND", bit=10)
    product.add_stored_band(
        BandSpec("pixel_classif_flags", "int32"),
        np.full((2, 2), 1024),
        flag_coding_name="pixel_classif_flags",
    )
    product.metadata = {"Manifest": {"platform": "Sentinel-3A"}, "history": ["classif"]}
    product.tie_point_grids = {"SZA": np.zeros((2, 2))}
    product.start_time = datetime(2018, 3, 15, tzinfo=timezone.utc)
    product.add_mask(Mask("IDEPIX_LAND", "pixel_classif_flags.IDEPIX_LAND"))
    return product


class TestSelectionPolicy:
    """Tests for SelectionPolicy."""

    def test_duplicate_band_in_allow_list(self):
        """Test allow-lists cannot repeat a band."""
        with pytest.raises(DefinitionError):
            SelectionPolicy("rad2refl", bands=("Oa21_reflectance", "Oa21_reflectance"))

    def test_from_dict(self):
        """Test dictionary form."""
        policy = SelectionPolicy.from_dict({
            "from": "cloud_buffer",
            "bands": ["pixel_classif_flags"],
            "overrides": ["pixel_classif_flags"],
            "copy": ["flag_codings"],
            "optional": True,
        })

        assert policy.label == "cloud_buffer"
        assert policy.overrides == ("pixel_classif_flags",)
        assert policy.copy_flag_codings
        assert not policy.copy_metadata
        assert policy.optional
        assert SelectionPolicy.from_dict(policy.to_dict()) == policy

    def test_from_dict_unknown_facet(self):
        """Test unknown copy facets are rejected."""
        with pytest.raises(DefinitionError, match="Unknown copy facets"):
            SelectionPolicy.from_dict({"from": "x", "copy": ["quicklook"]})


class TestProductMerger:
    """Tests for ProductMerger."""

    def test_allow_list(self, target):
        """Test only allow-listed bands are copied."""
        source = make_source("rad2refl", ["Oa20_reflectance", "Oa21_reflectance"])

        ProductMerger(target).merge([(source, SelectionPolicy("rad2refl", bands=("Oa21_reflectance",)))])

        assert target.band_names == ["Oa21_reflectance"]

    def test_copied_band_shares_samples(self, target):
        """Test copied bands read the source samples."""
        source = make_source("rad2refl", ["Oa21_reflectance"], fill=0.6)

        ProductMerger(target).merge([(source, SelectionPolicy("rad2refl", bands=("Oa21_reflectance",)))])

        np.testing.assert_allclose(target.get_band("Oa21_reflectance").read(), 0.6)

    def test_missing_selected_band(self, target):
        """Test allow-listed bands must exist in the source."""
        source = make_source("rad2refl", ["Oa20_reflectance"])

        with pytest.raises(DefinitionError) as exc_info:
            ProductMerger(target).merge([(source, SelectionPolicy("rad2refl", bands=("Oa21_reflectance",)))])
        assert exc_info.value.band_name == "Oa21_reflectance"

    def test_collision_fails(self, target):
        """Test a later source cannot silently replace a band."""
        first = make_source("first", ["altitude"])
        second = make_source("second", ["altitude"])

        with pytest.raises(DefinitionError, match="collides with band from 'first'"):
            ProductMerger(target).merge([
                (first, SelectionPolicy("first", bands=("altitude",))),
                (second, SelectionPolicy("second", bands=("altitude",))),
            ])

    def test_override(self, target):
        """Test permitted overrides replace the band and are reported."""
        first = make_source("first", ["altitude"], fill=1.0)
        second = make_source("second", ["altitude"], fill=2.0)

        merger = ProductMerger(target)
        merger.merge([
            (first, SelectionPolicy("first", bands=("altitude",))),
            (second, SelectionPolicy("second", bands=("altitude",), overrides=("altitude",))),
        ])

        np.testing.assert_allclose(target.get_band("altitude").read(), 2.0)
        assert merger.report.overridden == ["altitude"]
        assert merger.report.band_sources == {"altitude": "second"}

    def test_override_updates_copied_masks(self, target, classification):
        """Test masks copied from an earlier source read the overriding flag band."""
        post = make_source("postprocessed", [])
        post.flags.register("pixel_classif_flags", "IDEPIX_LAND", bit=10)
        post.add_stored_band(
            BandSpec("pixel_classif_flags", "int32"),
            np.zeros((2, 2)),
            flag_coding_name="pixel_classif_flags",
        )

        ProductMerger(target).merge([
            (classification, SelectionPolicy("classif", copy_flag_bands=True, copy_masks=True)),
            (post, SelectionPolicy(
                "postprocessed",
                bands=("pixel_classif_flags",),
                overrides=("pixel_classif_flags",),
            )),
        ])

        np.testing.assert_array_equal(target.get_band("pixel_classif_flags").read(), 0)
        assert not target.read_mask("IDEPIX_LAND").any()

    def test_raster_mismatch(self, target):
        """Test sources must match the target raster."""
        source = make_source("big", ["x"], shape=(3, 3))

        with pytest.raises(DefinitionError, match="does not match"):
            ProductMerger(target).merge([(source, SelectionPolicy("big", bands=("x",)))])

    def test_absent_optional_source_is_skipped(self, target):
        """Test optional sources may be absent."""
        ProductMerger(target).merge([(None, SelectionPolicy("o2corr", bands=("trans_13",), optional=True))])

        assert target.band_names == []

    def test_absent_required_source_fails(self, target):
        """Test required sources must be present."""
        with pytest.raises(DefinitionError, match="Required merge source 'o2corr'"):
            ProductMerger(target).merge([(None, SelectionPolicy("o2corr", bands=("trans_13",)))])

    def test_flag_bands_carry_codings(self, target, classification):
        """Test copying flag bands composes their codings."""
        ProductMerger(target).merge([(classification, SelectionPolicy("classif", copy_flag_bands=True))])

        assert target.band_names == ["pixel_classif_flags"]
        assert target.flags.resolve("pixel_classif_flags", "IDEPIX_LAND") == 1024
        assert target.resolve_flag("pixel_classif_flags", "IDEPIX_LAND") == 1024

    def test_metadata_facets(self, target, classification):
        """Test metadata, time, tie-point grids and masks are copied on request."""
        target.metadata = {"Manifest": {"orbit": 10811}}

        ProductMerger(target).merge([(
            classification,
            SelectionPolicy(
                "classif",
                copy_metadata=True,
                copy_time=True,
                copy_flag_bands=True,
                copy_masks=True,
                copy_tie_point_grids=True,
            ),
        )])

        assert target.metadata["Manifest"] == {"orbit": 10811, "platform": "Sentinel-3A"}
        assert target.metadata["history"] is not classification.metadata["history"]
        assert target.start_time == classification.start_time
        assert list(target.tie_point_grids) == ["SZA"]
        assert target.has_mask("IDEPIX_LAND")

    def test_facets_not_copied_by_default(self, target, classification):
        """Test a band-only policy copies nothing else."""
        ProductMerger(target).merge([(classification, SelectionPolicy("classif", bands=("nn_value",)))])

        assert target.metadata == {}
        assert target.tie_point_grids == {}
        assert target.masks == []
        assert target.flags.band_names == []

    def test_conflicting_mask_fails(self, target, classification):
        """Test masks with the same name but another expression conflict."""
        target.flags.register("pixel_classif_flags", "IDEPIX_LAND", bit=10)
        target.add_stored_band(
            BandSpec("nn_value"), np.zeros((2, 2))
        )
        target.add_mask(Mask("IDEPIX_LAND", "nn_value > 0"))

        with pytest.raises(DefinitionError, match="conflicts"):
            ProductMerger(target).merge([
                (classification, SelectionPolicy("classif", copy_flag_bands=True, copy_masks=True))
            ])
