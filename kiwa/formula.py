"""Formula evaluation for the pricing sheet.

Formulas are a small arithmetic language: a leading ``=`` followed by numbers,
cell references (``B2``), ``+ - * /`` and parentheses.  Cell references are
replaced by the referenced cell's numeric value *before* anything is parsed,
and the substituted text must consist only of digits, operators, parentheses,
dots and whitespace.  Anything else (function names, stray letters, quotes)
is rejected with ``#ERROR`` so user input can never reach an interpreter.

Evaluation is one-shot.  A formula cell caches the value computed when the
edit was committed; it is not recomputed when a referenced cell changes later.
"""

from __future__ import annotations

import math
import re
from typing import Any, List, Mapping, Optional

ERROR = "#ERROR"
NUM_ERROR = "#Num!"

_CELL_REF_RE = re.compile(r"[A-Z][0-9]+")
_NUMERIC_CHARS_RE = re.compile(r"[^0-9.\-]+")
_LEADING_NUMBER_RE = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)")
_SAFE_EXPRESSION_RE = re.compile(r"^[0-9+\-*/().\s]+$")
_TOKEN_RE = re.compile(r"\s*(?:(\d+\.?\d*|\.\d+)|(.))")


class FormulaSyntaxError(ValueError):
    """Raised by the expression parser on malformed input."""


def cell_numeric_value(raw: Optional[str]) -> float:
    """Return the number a cell contributes to a formula (``0`` when not numeric)."""

    if not raw:
        return 0.0
    cleaned = _NUMERIC_CHARS_RE.sub("", raw)
    match = _LEADING_NUMBER_RE.match(cleaned)
    if not match:
        return 0.0
    try:
        value = float(match.group(0))
    except ValueError:
        return 0.0
    if math.isnan(value):
        return 0.0
    return value


def format_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def _substitute(value: float) -> str:
    text = format_number(value)
    if value < 0:
        return f"({text})"
    return text


class _Parser:
    """Recursive-descent parser for ``expr := term (('+'|'-') term)*``."""

    def __init__(self, text: str) -> None:
        self.tokens: List[str] = []
        pos = 0
        while pos < len(text):
            match = _TOKEN_RE.match(text, pos)
            if match is None or match.end() == pos:
                break
            number, symbol = match.groups()
            if number is not None:
                self.tokens.append(number)
            elif symbol is not None and not symbol.isspace():
                self.tokens.append(symbol)
            pos = match.end()
        self.index = 0

    def _peek(self) -> Optional[str]:
        if self.index < len(self.tokens):
            return self.tokens[self.index]
        return None

    def _take(self) -> str:
        token = self._peek()
        if token is None:
            raise FormulaSyntaxError("unexpected end of expression")
        self.index += 1
        return token

    def parse(self) -> float:
        if not self.tokens:
            raise FormulaSyntaxError("empty expression")
        value = self._expression()
        if self._peek() is not None:
            raise FormulaSyntaxError(f"unexpected token {self._peek()!r}")
        return value

    def _expression(self) -> float:
        value = self._term()
        while self._peek() in ("+", "-"):
            op = self._take()
            rhs = self._term()
            value = value + rhs if op == "+" else value - rhs
        return value

    def _term(self) -> float:
        value = self._factor()
        while self._peek() in ("*", "/"):
            op = self._take()
            rhs = self._factor()
            if op == "*":
                value = value * rhs
            elif rhs == 0:
                # JavaScript semantics: x/0 is infinite, 0/0 is NaN.  Both end up as #Num!.
                value = math.nan if value == 0 else math.copysign(math.inf, value)
            else:
                value = value / rhs
        return value

    def _factor(self) -> float:
        token = self._take()
        if token == "-":
            return -self._factor()
        if token == "+":
            return self._factor()
        if token == "(":
            value = self._expression()
            if self._take() != ")":
                raise FormulaSyntaxError("missing closing parenthesis")
            return value
        try:
            return float(token)
        except ValueError as exc:
            raise FormulaSyntaxError(f"unexpected token {token!r}") from exc


def evaluate_expression(expression: str) -> float:
    return _Parser(expression).parse()


def evaluate(formula: str, grid: Mapping[str, Any]) -> str:
    """Evaluate ``formula`` against ``grid`` and return the text to show in the cell."""

    if not formula.startswith("="):
        return formula

    expression = formula[1:].upper()

    def _replace(match: "re.Match[str]") -> str:
        cell = grid.get(match.group(0))
        raw = getattr(cell, "value", None) if cell is not None else None
        return _substitute(cell_numeric_value(raw))

    try:
        expression = _CELL_REF_RE.sub(_replace, expression)
        if not _SAFE_EXPRESSION_RE.match(expression):
            return ERROR
        result = evaluate_expression(expression)
    except (FormulaSyntaxError, ArithmeticError, RecursionError):
        return ERROR

    if math.isnan(result) or math.isinf(result):
        return NUM_ERROR
    return format_number(result)


__all__ = [
    "ERROR",
    "NUM_ERROR",
    "FormulaSyntaxError",
    "cell_numeric_value",
    "evaluate",
    "evaluate_expression",
    "format_number",
]
