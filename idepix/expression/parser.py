"""
Tokenizer and recursive-descent parser for band-math expressions.

Grammar, lowest to highest precedence:

    or_expr     := and_expr (('||' | 'or') and_expr)*
    and_expr    := comparison (('&&' | 'and') comparison)*
    comparison  := additive (('<' | '<=' | '>' | '>=' | '==' | '!=') additive)?
    additive    := multiplicative (('+' | '-') multiplicative)*
    multiplicative := unary (('*' | '/') unary)*
    unary       := ('-' | '+' | '!' | 'not') unary | primary
    primary     := NUMBER | 'true' | 'false' | NAME | NAME '.' FLAG
                 | FUNCTION '(' or_expr (',' or_expr)* ')' | '(' or_expr ')'

Examples:
    >>> parse("1013.25 * exp(-altitude / 8400)")
    >>> parse("pixel_classif_flags.IDEPIX_LAND && Oa21_reflectance > 0.5")
"""

import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from idepix.errors import DefinitionError
from idepix.expression.terms import (
    BandRef,
    BinaryOp,
    Call,
    Constant,
    FlagRef,
    Term,
    UnaryOp,
)


# name -> (arity, vectorised implementation)
FUNCTIONS: Dict[str, Tuple[int, Callable[..., np.ndarray]]] = {
    "exp": (1, np.exp),
    "log": (1, np.log),
    "log10": (1, np.log10),
    "sqrt": (1, np.sqrt),
    "abs": (1, np.abs),
    "sin": (1, np.sin),
    "cos": (1, np.cos),
    "tan": (1, np.tan),
    "min": (2, np.minimum),
    "max": (2, np.maximum),
    "pow": (2, np.power),
}

COMPARISON_OPS = ("<", "<=", ">", ">=", "==", "!=")
KEYWORD_OPS = {"and": "&&", "or": "||", "not": "!"}
BOOLEAN_LITERALS = {"true": 1.0, "false": 0.0}

_TOKEN_RE = re.compile(
    r"""
    (?P<number>(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?)
    |(?P<name>[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)?)
    |(?P<op>&&|\|\||<=|>=|==|!=|[-+*/()<>!,])
    """,
    re.VERBOSE,
)


@dataclass(frozen=True)
class Token:
    kind: str  # number, name, op, end
    text: str
    position: int


def tokenize(text: str) -> List[Token]:
    """
    Split an expression into tokens.

    Raises:
        DefinitionError: On characters that do not start a valid token
    """
    tokens: List[Token] = []
    pos = 0
    while pos < len(text):
        if text[pos].isspace():
            pos += 1
            continue
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise DefinitionError(
                f"Unexpected character '{text[pos]}' at position {pos}",
                expression=text,
            )
        kind = match.lastgroup
        value = match.group(kind)
        if kind == "name" and value in KEYWORD_OPS:
            kind, value = "op", KEYWORD_OPS[value]
        tokens.append(Token(kind, value, pos))
        pos = match.end()
    tokens.append(Token("end", "", len(text)))
    return tokens


class Parser:
    """Recursive-descent parser producing a term tree."""

    def __init__(self, text: str):
        self.text = text
        self._tokens = tokenize(text)
        self._index = 0

    def parse(self) -> Term:
        term = self._or_expr()
        token = self._peek()
        if token.kind != "end":
            self._fail(f"Unexpected token '{token.text}' at position {token.position}")
        return term

    # --- Token helpers ---

    def _peek(self) -> Token:
        return self._tokens[self._index]

    def _advance(self) -> Token:
        token = self._tokens[self._index]
        self._index += 1
        return token

    def _accept(self, *ops: str) -> Optional[str]:
        token = self._peek()
        if token.kind == "op" and token.text in ops:
            self._index += 1
            return token.text
        return None

    def _expect(self, op: str) -> None:
        if self._accept(op) is None:
            token = self._peek()
            found = token.text or "end of expression"
            self._fail(f"Expected '{op}' but found '{found}' at position {token.position}")

    def _fail(self, message: str) -> None:
        raise DefinitionError(message, expression=self.text)

    # --- Grammar rules ---

    def _or_expr(self) -> Term:
        term = self._and_expr()
        while self._accept("||"):
            term = BinaryOp("||", term, self._and_expr())
        return term

    def _and_expr(self) -> Term:
        term = self._comparison()
        while self._accept("&&"):
            term = BinaryOp("&&", term, self._comparison())
        return term

    def _comparison(self) -> Term:
        term = self._additive()
        op = self._accept(*COMPARISON_OPS)
        if op:
            term = BinaryOp(op, term, self._additive())
        return term

    def _additive(self) -> Term:
        term = self._multiplicative()
        while True:
            op = self._accept("+", "-")
            if op is None:
                return term
            term = BinaryOp(op, term, self._multiplicative())

    def _multiplicative(self) -> Term:
        term = self._unary()
        while True:
            op = self._accept("*", "/")
            if op is None:
                return term
            term = BinaryOp(op, term, self._unary())

    def _unary(self) -> Term:
        op = self._accept("-", "+", "!")
        if op:
            return UnaryOp(op, self._unary())
        return self._primary()

    def _primary(self) -> Term:
        token = self._advance()

        if token.kind == "number":
            return Constant(float(token.text))

        if token.kind == "op" and token.text == "(":
            term = self._or_expr()
            self._expect(")")
            return term

        if token.kind == "name":
            if token.text in BOOLEAN_LITERALS:
                return Constant(BOOLEAN_LITERALS[token.text])
            if "." in token.text:
                band, flag = token.text.split(".", 1)
                return FlagRef(band, flag)
            if self._accept("("):
                return self._call(token)
            return BandRef(token.text)

        found = token.text or "end of expression"
        self._fail(f"Unexpected token '{found}' at position {token.position}")

    def _call(self, token: Token) -> Term:
        name = token.text
        if name not in FUNCTIONS:
            self._fail(f"Unknown function '{name}'")

        args = [self._or_expr()]
        while self._accept(","):
            args.append(self._or_expr())
        self._expect(")")

        arity = FUNCTIONS[name][0]
        if len(args) != arity:
            self._fail(f"Function '{name}' expects {arity} argument(s), got {len(args)}")
        return Call(name, tuple(args))


def parse(text: str) -> Term:
    """
    Parse an expression into a term tree.

    Args:
        text: Expression source

    Returns:
        Root term

    Raises:
        DefinitionError: On syntax errors or unknown functions
    """
    if not text or not text.strip():
        raise DefinitionError("Empty expression", expression=text)
    return Parser(text).parse()
