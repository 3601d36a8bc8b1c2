"""
Tests for the raster product data model.

Tests cover:
- Band descriptors and no-data handling
- Stored, declared and virtual bands
- Product band and mask management
- Declared copies used for static validation
"""

import numpy as np
import pytest

from idepix.datamodel import Band, BandSpec, Mask, Product, VirtualBand
from idepix.errors import DefinitionError


@pytest.fixture
def product():
    """Small product with two stored bands and a flag band."""
    product = Product("S3A_TEST", "OL_1_EFR", width=3, height=2)
    product.add_stored_band(BandSpec("a", "float32", unit="dl"), np.arange(6).reshape(2, 3))
    product.add_stored_band(
        BandSpec("b", "float32", no_data_value=0.0, no_data_value_used=True),
        np.array([[0.0, 1.0, 2.0], [3.0, 0.0, 5.0]]),
    )
    product.flags.register("flags", "LAND", bit=0)
    product.add_stored_band(
        BandSpec("flags", "int32"), np.array([[1, 0, 1], [0, 0, 1]]), flag_coding_name="flags"
    )
    return product


class TestBandSpec:
    """Tests for BandSpec."""

    def test_invalid_dtype(self):
        """Test unknown data types are rejected."""
        with pytest.raises(TypeError):
            BandSpec("x", "float17")

    def test_no_data_value_required_when_used(self):
        """Test no-data use requires a value."""
        with pytest.raises(ValueError):
            BandSpec("x", no_data_value_used=True)

    def test_no_data_mask_value(self):
        """Test explicit no-data values."""
        spec = BandSpec("x", "int16", no_data_value=-1, no_data_value_used=True)

        np.testing.assert_array_equal(spec.no_data_mask(np.array([-1, 0, 5])), [True, False, False])

    def test_no_data_mask_nan(self):
        """Test floating point bands treat NaN as no-data."""
        spec = BandSpec("x", "float32")

        np.testing.assert_array_equal(
            spec.no_data_mask(np.array([np.nan, 1.0])), [True, False]
        )


class TestBands:
    """Tests for stored, declared and virtual bands."""

    def test_stored_band_is_read_only(self, product):
        """Test band samples cannot be modified in place."""
        data = product.get_band("a").read()

        with pytest.raises(ValueError):
            data[0, 0] = 42.0

    def test_stored_band_converts_dtype(self, product):
        """Test samples are converted to the band type."""
        assert product.get_band("a").read().dtype == np.float32

    def test_band_must_be_2d(self):
        """Test 1-D data is rejected."""
        with pytest.raises(ValueError):
            Band(BandSpec("x"), np.zeros(4))

    def test_declared_band_read_fails(self):
        """Test reading a declared band fails."""
        band = Band.declared(BandSpec("x"), (2, 3))

        assert band.is_declared
        assert band.shape == (2, 3)
        with pytest.raises(DefinitionError, match="declared only"):
            band.read()

    def test_get_pixel(self, product):
        """Test single pixel access uses (x, y)."""
        assert product.get_band("a").get_pixel(2, 1) == 5.0

    def test_valid_mask(self, product):
        """Test the valid mask honours the no-data value."""
        np.testing.assert_array_equal(
            product.get_band("b").valid_mask(), [[False, True, True], [True, False, True]]
        )

    def test_virtual_band(self, product):
        """Test virtual bands evaluate lazily with their no-data value."""
        band = product.add_virtual_band(
            BandSpec("sum", "float32", no_data_value=-1.0, no_data_value_used=True), "a + b"
        )

        assert band.is_bound
        np.testing.assert_allclose(band.read(), [[-1.0, 2.0, 4.0], [6.0, -1.0, 10.0]])
        assert band.get_pixel(1, 0) == 2.0

    def test_virtual_band_caches_full_read(self, product):
        """Test the full raster is computed once."""
        band = product.add_virtual_band(BandSpec("twice"), "a * 2")

        assert band.read() is band.read()

    def test_virtual_band_window(self, product):
        """Test windowed reads of a virtual band."""
        band = product.add_virtual_band(BandSpec("twice"), "a * 2")

        np.testing.assert_allclose(band.read((slice(0, 1), slice(1, 3))), [[2.0, 4.0]])

    def test_virtual_band_undefined_reference(self, product):
        """Test virtual bands referencing unknown bands fail when added."""
        with pytest.raises(DefinitionError) as exc_info:
            product.add_virtual_band(BandSpec("bad"), "a + c")

        assert exc_info.value.band_name == "bad"
        assert exc_info.value.expression == "a + c"
        assert not product.has_band("bad")

    def test_unbound_virtual_band_read_fails(self):
        """Test reading an unbound virtual band fails."""
        with pytest.raises(DefinitionError):
            VirtualBand(BandSpec("v"), "a").read()

    def test_virtual_band_over_declared_bands(self, product):
        """Test virtual bands over declared bands bind but cannot be read."""
        declared = product.declared_copy()
        band = declared.add_virtual_band(BandSpec("v"), "a + b")

        with pytest.raises(DefinitionError, match="declared-only"):
            band.read()


class TestProduct:
    """Tests for Product."""

    def test_invalid_size(self):
        """Test products need a positive raster size."""
        with pytest.raises(ValueError):
            Product("p", "T", width=0, height=2)

    def test_duplicate_band_fails(self, product):
        """Test band names are unique."""
        with pytest.raises(DefinitionError, match="already exists"):
            product.add_stored_band(BandSpec("a"), np.zeros((2, 3)))

    def test_size_mismatch_fails(self, product):
        """Test bands must match the product raster."""
        with pytest.raises(DefinitionError, match="does not match"):
            product.add_stored_band(BandSpec("c"), np.zeros((3, 3)))

    def test_flag_band_requires_coding(self, product):
        """Test flag bands reference a registered coding."""
        with pytest.raises(DefinitionError, match="unknown flag coding"):
            product.add_stored_band(BandSpec("q", "int32"), np.zeros((2, 3)), flag_coding_name="q")

    def test_get_band_missing(self, product):
        """Test get_band raises KeyError for unknown bands."""
        with pytest.raises(KeyError):
            product.get_band("missing")

    def test_band_listing(self, product):
        """Test band names, flag bands and membership."""
        assert product.band_names == ["a", "b", "flags"]
        assert [b.name for b in product.flag_bands] == ["flags"]
        assert "a" in product
        assert "c" not in product

    def test_replace_band(self, product):
        """Test replacing a band keeps its position."""
        product.replace_band(Band(BandSpec("a"), np.ones((2, 3))))

        assert product.band_names == ["a", "b", "flags"]
        assert product.get_band("a").read()[0, 0] == 1.0

    def test_replace_band_rebinds_virtual_bands(self, product):
        """Test virtual bands reading a replaced band see the new samples."""
        product.add_virtual_band(BandSpec("a2", "float32"), "a * 2")
        product.add_virtual_band(BandSpec("a4", "float32"), "a2 * 2")
        assert product.get_band("a4").read()[0, 1] == 4.0

        product.replace_band(Band(BandSpec("a", "float32"), np.full((2, 3), 10.0)))

        np.testing.assert_allclose(product.get_band("a2").read(), 20.0)
        np.testing.assert_allclose(product.get_band("a4").read(), 40.0)

    def test_replace_flag_band_rebinds_masks(self, product):
        """Test masks over a replaced flag band follow the new flags."""
        product.add_mask(Mask("LAND", "flags.LAND"))

        product.replace_band(
            Band(BandSpec("flags", "int32"), np.ones((2, 3)), flag_coding_name="flags")
        )

        assert product.read_mask("LAND").all()

    def test_replace_missing_band_fails(self, product):
        """Test replace_band requires an existing band."""
        with pytest.raises(DefinitionError):
            product.replace_band(Band(BandSpec("z"), np.ones((2, 3))))

    def test_masks(self, product):
        """Test mask definitions and evaluation."""
        product.add_mask(Mask("LAND", "flags.LAND"))

        assert product.has_mask("LAND")
        np.testing.assert_array_equal(
            product.read_mask("LAND"), [[True, False, True], [False, False, True]]
        )

    def test_duplicate_mask_fails(self, product):
        """Test mask names are unique."""
        product.add_mask(Mask("LAND", "flags.LAND"))
        with pytest.raises(DefinitionError):
            product.add_mask(Mask("LAND", "flags.LAND"))

    def test_invalid_mask_expression(self, product):
        """Test masks are bound when added."""
        with pytest.raises(DefinitionError, match="Invalid mask 'SNOW'"):
            product.add_mask(Mask("SNOW", "flags.SNOW"))

    def test_declared_copy(self, product):
        """Test declared copies keep contracts but no samples."""
        product.metadata["history"] = {"source": "test"}
        product.add_mask(Mask("LAND", "flags.LAND"))

        declared = product.declared_copy()

        assert declared.band_names == product.band_names
        assert all(b.is_declared for b in declared.bands)
        assert declared.get_band("flags").flag_coding_name == "flags"
        assert declared.has_mask("LAND")
        assert declared.metadata == product.metadata
        assert declared.metadata is not product.metadata

    def test_to_dict(self, product):
        """Test dictionary description."""
        result = product.to_dict()

        assert result["name"] == "S3A_TEST"
        assert [b["name"] for b in result["bands"]] == ["a", "b", "flags"]
        assert result["flags"]["flags"][0]["name"] == "LAND"
