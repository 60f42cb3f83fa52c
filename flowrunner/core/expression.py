"""Tokenizer and grammar for condition node expressions.

The accepted language is deliberately tiny::

    expression := path operator literal
    path       := identifier ("." (identifier | digits))*
    operator   := "==" | "!=" | "<=" | ">=" | "<" | ">"
    literal    := json-value | 'single quoted' | bareword

Nothing here evaluates code. Anything outside the grammar raises
``ExpressionError``.
"""

import json
from typing import Any, Callable, List, NamedTuple, Optional

from .exceptions import ExpressionError

OPERATORS = ("==", "!=", "<=", ">=", "<", ">")
OPERATOR_CHARS = set("=!<>")
BAREWORD_STOP = set("=!<>()&|") | set(" \t\r\n")


class Token(NamedTuple):
    kind: str
    text: str
    position: int


class Comparison(NamedTuple):
    """Parsed ``<path> <operator> <literal>`` expression."""
    path: str
    operator: str
    literal: Any
    source: str


def _unsupported(expression: str, reason: str, position: Optional[int] = None) -> ExpressionError:
    return ExpressionError(
        f"Unsupported condition format: {expression} ({reason}). Use simple property comparisons.",
        expression=expression,
        position=position,
    )


def _is_identifier_start(char: str) -> bool:
    return char.isalpha() or char in "_$"


def _is_identifier_char(char: str) -> bool:
    return char.isalnum() or char in "_$-"


class Tokenizer:
    """Splits an expression into PATH, OPERATOR and LITERAL tokens."""

    def __init__(self, expression: str):
        self.expression = expression
        self.text = expression.strip()
        self.pos = 0

    def _skip_whitespace(self):
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1

    def _read_path(self) -> Token:
        start = self.pos
        segments = []
        while True:
            segment_start = self.pos
            if self.pos < len(self.text) and _is_identifier_start(self.text[self.pos]):
                self.pos += 1
                while self.pos < len(self.text) and _is_identifier_char(self.text[self.pos]):
                    self.pos += 1
            elif segments and self.pos < len(self.text) and self.text[self.pos].isdigit():
                while self.pos < len(self.text) and self.text[self.pos].isdigit():
                    self.pos += 1
            else:
                raise _unsupported(self.expression, "expected a property path", segment_start)
            segments.append(self.text[segment_start:self.pos])

            if self.pos < len(self.text) and self.text[self.pos] == ".":
                self.pos += 1
                continue
            break
        return Token("PATH", self.text[start:self.pos], start)

    def _read_operator(self) -> Token:
        start = self.pos
        while self.pos < len(self.text) and self.text[self.pos] in OPERATOR_CHARS:
            self.pos += 1
        operator = self.text[start:self.pos]
        if not operator:
            raise _unsupported(self.expression, "expected a comparison operator", start)
        if operator not in OPERATORS:
            raise _unsupported(self.expression, f"unsupported operator '{operator}'", start)
        return Token("OPERATOR", operator, start)

    def _read_literal(self) -> Token:
        start = self.pos
        rest = self.text[self.pos:]
        if not rest:
            raise _unsupported(self.expression, "expected a literal value", start)

        if rest[0] == "'":
            end = rest.find("'", 1)
            if end != len(rest) - 1:
                raise _unsupported(self.expression, "unterminated or trailing text after quoted literal", start)
        elif rest[0] in OPERATOR_CHARS:
            raise _unsupported(self.expression, f"unexpected '{rest[0]}' before literal", start)
        else:
            try:
                json.loads(rest)
            except ValueError:
                if any(char in BAREWORD_STOP for char in rest):
                    raise _unsupported(self.expression, "literal must be JSON, quoted or a single word", start)

        self.pos = len(self.text)
        return Token("LITERAL", rest, start)

    def tokenize(self) -> List[Token]:
        if not self.text:
            raise _unsupported(self.expression, "empty expression", 0)
        self._skip_whitespace()
        path = self._read_path()
        self._skip_whitespace()
        operator = self._read_operator()
        self._skip_whitespace()
        literal = self._read_literal()
        return [path, operator, literal]


def decode_literal(text: str) -> Any:
    """JSON-decode a literal when possible, otherwise keep it as a string."""
    if len(text) >= 2 and text[0] == "'" and text[-1] == "'":
        return text[1:-1]
    try:
        return json.loads(text)
    except ValueError:
        return text


def parse_expression(expression: str) -> Comparison:
    """Parse ``expression`` into a ``Comparison`` or raise ``ExpressionError``."""
    if not isinstance(expression, str):
        raise _unsupported(repr(expression), "expression must be a string")
    path, operator, literal = Tokenizer(expression).tokenize()
    return Comparison(path.text, operator.text, decode_literal(literal.text), expression)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _strict_equals(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if _is_number(left) and _is_number(right):
        return left == right
    if type(left) is not type(right):
        return False
    return left == right


def compare(left: Any, operator: str, right: Any) -> bool:
    """Apply ``operator``. Ordering comparisons need two numbers, else False."""
    if operator == "==":
        return _strict_equals(left, right)
    if operator == "!=":
        return not _strict_equals(left, right)
    if not (_is_number(left) and _is_number(right)):
        return False
    if operator == "<":
        return left < right
    if operator == ">":
        return left > right
    if operator == "<=":
        return left <= right
    if operator == ">=":
        return left >= right
    raise _unsupported(f"{left} {operator} {right}", f"unsupported operator '{operator}'")


def evaluate(comparison: Comparison, lookup: Callable[[str], Any]) -> bool:
    """Evaluate a parsed comparison, resolving its path through ``lookup``."""
    return compare(lookup(comparison.path), comparison.operator, comparison.literal)
