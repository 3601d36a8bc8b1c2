"""
Binding and evaluation of band-math expressions.

An expression is bound once against a namespace (usually a Product): every
band and flag reference is resolved at bind time, so undefined names fail
before any pixel is evaluated. Evaluation is vectorised over a raster window
and pure: the same bound expression over the same samples always yields the
same values.

Numeric semantics:
- all arithmetic is carried out in float64
- comparisons and logical operators yield 0.0/1.0
- a pixel where any referenced band is no-data, or where the result is not
  finite (division by zero, log of a negative number), is set to the
  output no-data value
"""

import logging
from typing import Any, Dict, List, Optional, Protocol, Tuple, Union

import numpy as np

from idepix.errors import DefinitionError
from idepix.expression.parser import FUNCTIONS, parse
from idepix.expression.terms import (
    BandRef,
    BinaryOp,
    Call,
    Constant,
    FlagRef,
    Term,
    UnaryOp,
    iter_terms,
)

logger = logging.getLogger(__name__)

Window = Tuple[slice, slice]

_ARITHMETIC = {
    "+": np.add,
    "-": np.subtract,
    "*": np.multiply,
    "/": np.divide,
}

_COMPARISON = {
    "<": np.less,
    "<=": np.less_equal,
    ">": np.greater,
    ">=": np.greater_equal,
    "==": np.equal,
    "!=": np.not_equal,
}


class Namespace(Protocol):
    """Name -> band lookup an expression is bound against."""

    @property
    def raster_shape(self) -> Tuple[int, int]: ...

    def resolve_band(self, name: str) -> Optional[Any]: ...

    def resolve_flag(self, band_name: str, flag_name: str) -> Optional[int]: ...


def window_shape(shape: Tuple[int, int], window: Optional[Window]) -> Tuple[int, int]:
    """Shape of a (row_slice, col_slice) window over a raster of the given shape."""
    if window is None:
        return shape
    rows, cols = window
    return (
        len(range(*rows.indices(shape[0]))),
        len(range(*cols.indices(shape[1]))),
    )


class BoundExpression:
    """
    An expression whose references have been resolved against a namespace.

    Attributes:
        text: Original expression text
        term: Parsed term tree
        shape: Raster shape (rows, cols) of the namespace
    """

    def __init__(
        self,
        text: str,
        term: Term,
        bands: Dict[str, Any],
        flags: Dict[Tuple[str, str], int],
        shape: Tuple[int, int],
    ):
        self.text = text
        self.term = term
        self.shape = shape
        self._bands = bands
        self._flags = flags

    @property
    def bands(self) -> List[Any]:
        """Band objects resolved at bind time."""
        return list(self._bands.values())

    @property
    def band_references(self) -> List[str]:
        """Names of all bands read by this expression (including flag bands)."""
        return list(self._bands)

    @property
    def flag_references(self) -> List[str]:
        """Flag references as 'band.FLAG' strings."""
        return [f"{band}.{flag}" for band, flag in self._flags]

    def evaluate(
        self,
        window: Optional[Window] = None,
        dtype: Union[str, np.dtype] = "float32",
        no_data_value: Optional[float] = None,
    ) -> np.ndarray:
        """
        Evaluate the expression over a window.

        Args:
            window: (row_slice, col_slice) or None for the whole raster
            dtype: Output pixel type
            no_data_value: Value written to invalid pixels. When None, NaN is
                used for floating point output and 0 for integer output.

        Returns:
            Array of the window's shape and the requested dtype
        """
        out_shape = window_shape(self.shape, window)
        valid = np.ones(out_shape, dtype=bool)
        samples: Dict[str, np.ndarray] = {}

        for name, band in self._bands.items():
            values = band.read(window)
            valid &= ~band.no_data_mask(values)
            samples[name] = values

        with np.errstate(all="ignore"):
            result = np.broadcast_to(
                np.asarray(self._eval(self.term, samples), dtype=np.float64),
                out_shape,
            )
            valid &= np.isfinite(result)

        out_dtype = np.dtype(dtype)
        if no_data_value is None:
            fill = np.nan if out_dtype.kind == "f" else 0
        else:
            fill = no_data_value
        return np.where(valid, result, fill).astype(out_dtype)

    def evaluate_pixel(self, x: int, y: int, **kwargs: Any) -> float:
        """Evaluate the expression at a single pixel."""
        values = self.evaluate((slice(y, y + 1), slice(x, x + 1)), **kwargs)
        return values[0, 0].item()

    def _eval(self, term: Term, samples: Dict[str, np.ndarray]) -> Any:
        if isinstance(term, Constant):
            return np.float64(term.value)

        if isinstance(term, BandRef):
            return samples[term.name].astype(np.float64)

        if isinstance(term, FlagRef):
            mask = self._flags[(term.band, term.flag)]
            raw = samples[term.band].astype(np.int64)
            return ((raw & mask) == mask).astype(np.float64)

        if isinstance(term, UnaryOp):
            operand = self._eval(term.operand, samples)
            if term.op == "-":
                return np.negative(operand)
            if term.op == "!":
                return np.equal(operand, 0).astype(np.float64)
            return operand

        if isinstance(term, BinaryOp):
            left = self._eval(term.left, samples)
            right = self._eval(term.right, samples)
            if term.op in _ARITHMETIC:
                return _ARITHMETIC[term.op](left, right)
            if term.op in _COMPARISON:
                return _COMPARISON[term.op](left, right).astype(np.float64)
            if term.op == "&&":
                return np.logical_and(left != 0, right != 0).astype(np.float64)
            if term.op == "||":
                return np.logical_or(left != 0, right != 0).astype(np.float64)
            raise DefinitionError(f"Unsupported operator '{term.op}'", expression=self.text)

        if isinstance(term, Call):
            func = FUNCTIONS[term.function][1]
            return func(*(self._eval(arg, samples) for arg in term.args))

        raise DefinitionError(f"Unsupported term {term!r}", expression=self.text)

    def __repr__(self) -> str:
        return f"BoundExpression('{self.text}', bands={self.band_references})"


def bind(expression: Union[str, Term], namespace: Namespace, text: Optional[str] = None) -> BoundExpression:
    """
    Resolve every reference of an expression against a namespace.

    Args:
        expression: Expression text or an already parsed term
        namespace: Namespace providing bands and flag codings
        text: Expression text for error messages when a term is passed

    Returns:
        BoundExpression ready for evaluation

    Raises:
        DefinitionError: On syntax errors, undefined bands or undefined flags
    """
    if isinstance(expression, str):
        text = expression
        term = parse(expression)
    else:
        term = expression
        text = text or str(expression)

    bands: Dict[str, Any] = {}
    flags: Dict[Tuple[str, str], int] = {}

    for sub in iter_terms(term):
        if isinstance(sub, BandRef):
            bands[sub.name] = _resolve_band(namespace, sub.name, text)
        elif isinstance(sub, FlagRef):
            bands[sub.band] = _resolve_band(namespace, sub.band, text)
            mask = namespace.resolve_flag(sub.band, sub.flag)
            if mask is None:
                raise DefinitionError(
                    f"Undefined flag '{sub.flag}' on band '{sub.band}'",
                    band_name=sub.band,
                    expression=text,
                )
            flags[(sub.band, sub.flag)] = mask

    logger.debug(f"Bound expression '{text}' to bands {sorted(bands)}")
    return BoundExpression(text, term, bands, flags, namespace.raster_shape)


def _resolve_band(namespace: Namespace, name: str, text: str) -> Any:
    band = namespace.resolve_band(name)
    if band is None:
        raise DefinitionError(
            f"Undefined band '{name}'",
            band_name=name,
            expression=text,
        )
    return band
