"""
Band-math expression engine.

Parses per-pixel algebraic/boolean formulas over bands and flag bits,
binds them against a product namespace and evaluates them lazily.

Usage:
    from idepix.expression import bind

    expr = bind("1013.25 * exp(-altitude / 8400)", product)
    pressure = expr.evaluate(dtype="float32", no_data_value=0)
"""

from idepix.expression.evaluator import (
    BoundExpression,
    Namespace,
    Window,
    bind,
    window_shape,
)
from idepix.expression.parser import FUNCTIONS, parse, tokenize
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

__all__ = [
    "BoundExpression",
    "Namespace",
    "Window",
    "bind",
    "window_shape",
    "FUNCTIONS",
    "parse",
    "tokenize",
    "BandRef",
    "BinaryOp",
    "Call",
    "Constant",
    "FlagRef",
    "Term",
    "UnaryOp",
    "iter_terms",
]
