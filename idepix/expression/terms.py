"""
Typed term tree for band-math expressions.

Terms are immutable; a parsed expression can be bound against any number
of namespaces without being re-parsed.
"""

from dataclasses import dataclass
from typing import Iterator, Tuple, Union


@dataclass(frozen=True)
class Constant:
    """Numeric literal (booleans are stored as 0.0/1.0)."""
    value: float

    def __str__(self) -> str:
        return repr(self.value)


@dataclass(frozen=True)
class BandRef:
    """Reference to a band by name."""
    name: str

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class FlagRef:
    """Bit-membership test `band.FLAG` on an integer flag band."""
    band: str
    flag: str

    def __str__(self) -> str:
        return f"{self.band}.{self.flag}"


@dataclass(frozen=True)
class UnaryOp:
    """Unary operator: '-', '+' or '!'."""
    op: str
    operand: "Term"

    def __str__(self) -> str:
        return f"{self.op}{self.operand}"


@dataclass(frozen=True)
class BinaryOp:
    """Binary arithmetic, comparison or logical operator."""
    op: str
    left: "Term"
    right: "Term"

    def __str__(self) -> str:
        return f"({self.left} {self.op} {self.right})"


@dataclass(frozen=True)
class Call:
    """Function call with positional arguments."""
    function: str
    args: Tuple["Term", ...]

    def __str__(self) -> str:
        return f"{self.function}({', '.join(str(a) for a in self.args)})"


Term = Union[Constant, BandRef, FlagRef, UnaryOp, BinaryOp, Call]


def iter_terms(term: Term) -> Iterator[Term]:
    """Depth-first iteration over a term and all of its sub-terms."""
    yield term
    if isinstance(term, UnaryOp):
        yield from iter_terms(term.operand)
    elif isinstance(term, BinaryOp):
        yield from iter_terms(term.left)
        yield from iter_terms(term.right)
    elif isinstance(term, Call):
        for arg in term.args:
            yield from iter_terms(arg)
