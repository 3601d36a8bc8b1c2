"""
Tests for the band-math expression engine.

Tests cover:
- Tokenizing and parsing (precedence, keywords, functions)
- Syntax errors and unknown functions
- Binding against a product namespace (undefined bands and flags)
- Vectorised evaluation, no-data propagation and non-finite results
- The S3-SNOW virtual band formulas
"""

import math

import numpy as np
import pytest

from idepix.datamodel import BandSpec, Product
from idepix.errors import DefinitionError
from idepix.expression import (
    BandRef,
    BinaryOp,
    Call,
    Constant,
    FlagRef,
    UnaryOp,
    bind,
    parse,
    tokenize,
)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def namespace():
    """Product with two float bands, a band with no-data and a flag band."""
    product = Product("expr_test", "TEST", width=3, height=2)
    product.add_stored_band(
        BandSpec("a", "float32"),
        np.array([[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]]),
    )
    product.add_stored_band(
        BandSpec("b", "float32"),
        np.array([[2.0, 0.0, 1.0], [0.5, 2.0, 3.0]]),
    )
    product.add_stored_band(
        BandSpec("c", "float32", no_data_value=-999.0, no_data_value_used=True),
        np.array([[1.0, -999.0, 1.0], [1.0, 1.0, -999.0]]),
    )
    product.flags.register("flags", "LAND", bit=0)
    product.flags.register("flags", "CLOUD", bit=3)
    product.add_stored_band(
        BandSpec("flags", "int32"),
        np.array([[1, 8, 9], [0, 1, 8]]),
        flag_coding_name="flags",
    )
    return product


# =============================================================================
# Parser Tests
# =============================================================================

class TestParser:
    """Tests for tokenize() and parse()."""

    def test_tokenize_names_numbers_and_operators(self):
        """Test tokens of a mixed expression."""
        tokens = tokenize("a.LAND && b >= 1.5e-3")
        kinds = [(t.kind, t.text) for t in tokens]

        assert kinds == [
            ("name", "a.LAND"),
            ("op", "&&"),
            ("name", "b"),
            ("op", ">="),
            ("number", "1.5e-3"),
            ("end", ""),
        ]

    def test_keyword_operators(self):
        """Test 'and', 'or' and 'not' map to their symbolic operators."""
        term = parse("not a and b or c")

        assert isinstance(term, BinaryOp)
        assert term.op == "||"
        assert term.left.op == "&&"
        assert term.left.left == UnaryOp("!", BandRef("a"))

    def test_multiplication_binds_tighter_than_addition(self):
        """Test arithmetic precedence."""
        term = parse("1 + 2 * 3")

        assert term == BinaryOp(
            "+", Constant(1.0), BinaryOp("*", Constant(2.0), Constant(3.0))
        )

    def test_comparison_binds_tighter_than_logical(self):
        """Test comparison precedence under '&&'."""
        term = parse("a > 0.5 && b - c < 0.01")

        assert term.op == "&&"
        assert term.left == BinaryOp(">", BandRef("a"), Constant(0.5))
        assert term.right.op == "<"
        assert term.right.left == BinaryOp("-", BandRef("b"), BandRef("c"))

    def test_flag_reference(self):
        """Test 'band.FLAG' parses to a flag reference."""
        assert parse("pixel_classif_flags.IDEPIX_LAND") == FlagRef(
            "pixel_classif_flags", "IDEPIX_LAND"
        )

    def test_function_call(self):
        """Test function calls with their arguments."""
        term = parse("(1013.25 * exp(-altitude/8400))")

        assert term.op == "*"
        assert isinstance(term.right, Call)
        assert term.right.function == "exp"
        assert term.right.args[0] == BinaryOp(
            "/", UnaryOp("-", BandRef("altitude")), Constant(8400.0)
        )

    def test_boolean_literals(self):
        """Test true/false become 1.0/0.0."""
        assert parse("true") == Constant(1.0)
        assert parse("false") == Constant(0.0)

    @pytest.mark.parametrize("text", ["", "   ", "a +", "(a", "a b", "a $ b", "1 +* 2"])
    def test_syntax_errors(self, text):
        """Test malformed expressions raise DefinitionError."""
        with pytest.raises(DefinitionError):
            parse(text)

    def test_unknown_function(self):
        """Test calling an unknown function fails."""
        with pytest.raises(DefinitionError, match="Unknown function 'foo'"):
            parse("foo(a)")

    def test_wrong_arity(self):
        """Test function arity is checked."""
        with pytest.raises(DefinitionError, match="expects 2 argument"):
            parse("max(a)")

    def test_error_carries_expression(self):
        """Test the formula text is attached to the error."""
        with pytest.raises(DefinitionError) as exc_info:
            parse("a >")
        assert exc_info.value.expression == "a >"

    def test_str_round_trip(self):
        """Test printing a term yields a parseable equivalent."""
        term = parse("a * (b + 2) > 1 && !c")
        assert parse(str(term)) == term


# =============================================================================
# Binding Tests
# =============================================================================

class TestBinding:
    """Tests for bind()."""

    def test_bind_collects_references(self, namespace):
        """Test bound band and flag references."""
        expr = bind("flags.LAND && a > b", namespace)

        assert sorted(expr.band_references) == ["a", "b", "flags"]
        assert expr.flag_references == ["flags.LAND"]
        assert expr.shape == (2, 3)

    def test_undefined_band(self, namespace):
        """Test an undefined band fails at bind time."""
        with pytest.raises(DefinitionError, match="Undefined band 'missing'") as exc_info:
            bind("a + missing", namespace)
        assert exc_info.value.band_name == "missing"

    def test_undefined_flag(self, namespace):
        """Test an undefined flag fails at bind time."""
        with pytest.raises(DefinitionError, match="Undefined flag 'SNOW'"):
            bind("flags.SNOW", namespace)

    def test_flag_on_band_without_coding(self, namespace):
        """Test a flag reference on a band without flag coding fails."""
        with pytest.raises(DefinitionError):
            bind("a.LAND", namespace)

    def test_bind_parsed_term(self, namespace):
        """Test binding an already parsed term."""
        term = parse("a + b")
        expr = bind(term, namespace)

        np.testing.assert_allclose(
            expr.evaluate(), [[3.0, 2.0, 4.0], [4.5, 7.0, 9.0]]
        )


# =============================================================================
# Evaluation Tests
# =============================================================================

class TestEvaluation:
    """Tests for BoundExpression.evaluate()."""

    def test_arithmetic(self, namespace):
        """Test vectorised arithmetic."""
        values = bind("a * 2 - b", namespace).evaluate()

        np.testing.assert_allclose(values, [[0.0, 4.0, 5.0], [7.5, 8.0, 9.0]])
        assert values.dtype == np.float32

    def test_comparisons_yield_zero_or_one(self, namespace):
        """Test boolean results are encoded 0/1."""
        values = bind("a > b", namespace).evaluate()

        np.testing.assert_array_equal(values, [[0, 1, 1], [1, 1, 1]])

    def test_logical_operators(self, namespace):
        """Test '&&', '||' and '!'."""
        values = bind("(a > 2 && b > 0.5) || !(a < 6)", namespace).evaluate()

        np.testing.assert_array_equal(values, [[0, 0, 1], [0, 1, 1]])

    def test_flag_bit_test(self, namespace):
        """Test flag references test bit membership."""
        land = bind("flags.LAND", namespace).evaluate(dtype="uint8")
        cloud = bind("flags.CLOUD", namespace).evaluate(dtype="uint8")

        np.testing.assert_array_equal(land, [[1, 0, 1], [0, 1, 0]])
        np.testing.assert_array_equal(cloud, [[0, 1, 1], [0, 0, 1]])

    def test_functions(self, namespace):
        """Test builtin functions."""
        values = bind("max(a, 4) + sqrt(b * b)", namespace).evaluate()

        np.testing.assert_allclose(values, [[6.0, 4.0, 5.0], [4.5, 7.0, 9.0]])

    def test_no_data_propagates(self, namespace):
        """Test a no-data reference makes the pixel no-data."""
        values = bind("a + c", namespace).evaluate(no_data_value=-1.0)

        np.testing.assert_allclose(values, [[2.0, -1.0, 4.0], [5.0, 6.0, -1.0]])

    def test_no_data_default_is_nan_for_float(self, namespace):
        """Test the default no-data for float output is NaN."""
        values = bind("a + c", namespace).evaluate()

        assert math.isnan(values[0, 1])
        assert values[0, 0] == 2.0

    def test_division_by_zero_is_no_data(self, namespace):
        """Test non-finite results map to the no-data value."""
        values = bind("a / b", namespace).evaluate(no_data_value=0.0)

        assert values[0, 1] == 0.0
        assert values[0, 0] == pytest.approx(0.5)

    def test_log_of_negative_is_no_data(self, namespace):
        """Test NaN results map to the no-data value."""
        values = bind("log(b - 1)", namespace).evaluate(no_data_value=0.0)

        assert values[0, 1] == 0.0
        assert values[1, 2] == pytest.approx(math.log(2.0))

    def test_integer_output(self, namespace):
        """Test integer output uses 0 for invalid pixels."""
        values = bind("a + c", namespace).evaluate(dtype="int16")

        assert values.dtype == np.int16
        np.testing.assert_array_equal(values, [[2, 0, 4], [5, 6, 0]])

    def test_window(self, namespace):
        """Test evaluation over a window."""
        window = (slice(1, 2), slice(0, 2))
        values = bind("a + b", namespace).evaluate(window)

        assert values.shape == (1, 2)
        np.testing.assert_allclose(values, [[4.5, 7.0]])

    def test_constant_expression_broadcasts(self, namespace):
        """Test an expression without band references fills the window."""
        values = bind("2 * 3", namespace).evaluate()

        assert values.shape == (2, 3)
        assert np.all(values == 6.0)

    def test_evaluate_pixel(self, namespace):
        """Test single-pixel evaluation."""
        expr = bind("a * b", namespace)

        assert expr.evaluate_pixel(2, 1) == pytest.approx(18.0)
        assert expr.evaluate_pixel(1, 0) == pytest.approx(0.0)

    def test_evaluation_is_deterministic(self, namespace):
        """Test repeated evaluation yields identical values."""
        expr = bind("exp(-a / 3) * b", namespace)

        np.testing.assert_array_equal(expr.evaluate(), expr.evaluate())


class TestS3SnowFormulas:
    """Tests for the surface pressure and cloud-over-snow formulas."""

    @pytest.fixture
    def formula_product(self):
        """Single-row product with the bands the formulas read."""
        product = Product("formulas", "TEST", width=4, height=1)
        product.add_stored_band(
            BandSpec("altitude", "float32"),
            np.array([[0.0, 8400.0 * math.log(2.0), 1000.0, 8400.0]]),
        )
        product.flags.register("pixel_classif_flags", "IDEPIX_LAND", bit=10)
        product.add_stored_band(
            BandSpec("pixel_classif_flags", "int32"),
            np.array([[1024, 1024, 1024, 0]]),
            flag_coding_name="pixel_classif_flags",
        )
        product.add_stored_band(
            BandSpec(
                "Oa21_reflectance", "float32",
                no_data_value=float("nan"), no_data_value_used=True,
            ),
            np.array([[0.5, 0.5001, np.nan, 0.9]]),
        )
        product.add_stored_band(BandSpec("surface_13", "float32"), np.full((1, 4), 0.40))
        product.add_stored_band(BandSpec("trans_13", "float32"), np.full((1, 4), 0.395))
        return product

    def test_surface_pressure(self, formula_product):
        """Test 1013.25 hPa at sea level and half of it at 8400*ln(2) m."""
        expr = bind("(1013.25 * exp(-altitude/8400))", formula_product)

        assert expr.evaluate_pixel(0, 0) == pytest.approx(1013.25)
        assert expr.evaluate_pixel(1, 0) == pytest.approx(506.625, abs=0.01)

    def test_cloud_over_snow_threshold(self, formula_product):
        """Test the reflectance threshold is strict and NaN gives 0."""
        expr = bind(
            "pixel_classif_flags.IDEPIX_LAND && Oa21_reflectance > 0.5 "
            "&& surface_13 - trans_13 < 0.01",
            formula_product,
        )
        values = expr.evaluate(no_data_value=0.0)

        np.testing.assert_array_equal(values, [[0.0, 1.0, 0.0, 0.0]])
