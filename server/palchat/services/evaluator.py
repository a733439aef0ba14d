from __future__ import annotations

import logging
import math
import operator
import re
from dataclasses import dataclass
from functools import cached_property
from typing import Callable, List, Optional

from langchain_core.tools import tool

from palchat.core.exceptions import AppError
from palchat.models.evaluation import EvaluationFailure, EvaluationResult, EvaluationSuccess

logger = logging.getLogger(__name__)

_DISALLOWED_CHARACTERS = re.compile(r"[^0-9+\-*/().]")
_WHITESPACE = re.compile(r"\s+")
_LARGE_NUMBER = re.compile(r"\d{10,}")
_EXACT_BINARY_OPERATION = re.compile(r"(\d+)([+\-*/])(\d+)")
_TOKEN = re.compile(r"\d+(?:\.\d*)?|\.\d+|[+\-*/()]")


class EvaluationError(AppError):
    status_code = 400
    error_type = "EVALUATION_ERROR"


def sanitize_expression(raw: str) -> str:
    """Keep only digits, the four operators, decimal points and parentheses."""
    return _DISALLOWED_CHARACTERS.sub("", raw.strip())


def format_number(value: float | int | str) -> str:
    if isinstance(value, str):
        return value

    number = float(value)
    magnitude = abs(number)
    if magnitude != 0 and (magnitude < 1e-4 or magnitude > 1e10):
        mantissa, exponent = f"{number:.4e}".split("e")
        return f"{mantissa}e{int(exponent):+d}"

    rounded = round(number, 6)
    if rounded.is_integer():
        return str(int(rounded))
    return repr(rounded)


@dataclass(frozen=True)
class _Token:
    text: str
    position: int


def _tokenize(expression: str) -> List[_Token]:
    tokens: list[_Token] = []
    position = 0
    while position < len(expression):
        match = _TOKEN.match(expression, position)
        if match is None:
            raise EvaluationError(
                f"Unexpected character '{expression[position]}' at position {position}."
            )
        tokens.append(_Token(match.group(), position))
        position = match.end()
    return tokens


class _Parser:
    """
    Recursive-descent evaluator over arithmetic tokens.

        expression := term (("+" | "-") term)*
        term       := unary (("*" | "/") unary)*
        unary      := "-" unary | primary
        primary    := NUMBER | "(" expression ")"
    """

    _ADDITIVE: dict[str, Callable[[float, float], float]] = {
        "+": operator.add,
        "-": operator.sub,
    }

    _MULTIPLICATIVE: dict[str, Callable[[float, float], float]] = {
        "*": operator.mul,
        "/": operator.truediv,
    }

    def __init__(self, tokens: List[_Token]) -> None:
        self._tokens = tokens
        self._index = 0

    def parse(self) -> float:
        if not self._tokens:
            raise EvaluationError("Expression cannot be empty.")
        value = self._expression()
        trailing = self._peek()
        if trailing is not None:
            raise EvaluationError(
                f"Unexpected token '{trailing.text}' at position {trailing.position}."
            )
        return value

    def _peek(self) -> Optional[_Token]:
        if self._index < len(self._tokens):
            return self._tokens[self._index]
        return None

    def _advance(self) -> _Token:
        token = self._peek()
        if token is None:
            raise EvaluationError("Unexpected end of expression.")
        self._index += 1
        return token

    def _expression(self) -> float:
        value = self._term()
        while True:
            token = self._peek()
            if token is None or token.text not in self._ADDITIVE:
                return value
            self._advance()
            value = self._ADDITIVE[token.text](value, self._term())

    def _term(self) -> float:
        value = self._unary()
        while True:
            token = self._peek()
            if token is None or token.text not in self._MULTIPLICATIVE:
                return value
            self._advance()
            operand = self._unary()
            try:
                value = self._MULTIPLICATIVE[token.text](value, operand)
            except ZeroDivisionError as exc:
                raise EvaluationError("Division by zero is not allowed.") from exc

    def _unary(self) -> float:
        token = self._peek()
        if token is not None and token.text == "-":
            self._advance()
            return -self._unary()
        return self._primary()

    def _primary(self) -> float:
        token = self._advance()
        if token.text == "(":
            value = self._expression()
            closing = self._peek()
            if closing is None or closing.text != ")":
                raise EvaluationError(f"Missing closing parenthesis for '(' at position {token.position}.")
            self._advance()
            return value
        if token.text[0].isdigit() or token.text[0] == ".":
            return float(token.text)
        raise EvaluationError(f"Unexpected token '{token.text}' at position {token.position}.")


def _truncating_division(dividend: int, divisor: int) -> int:
    quotient = abs(dividend) // abs(divisor)
    return -quotient if (dividend < 0) != (divisor < 0) else quotient


class NumericEvaluator:
    MAX_EXPRESSION_LENGTH = 200

    _EXACT_OPERATORS: dict[str, Callable[[int, int], int]] = {
        "+": operator.add,
        "-": operator.sub,
        "*": operator.mul,
        "/": _truncating_division,
    }

    def evaluate(self, expression: str) -> EvaluationResult:
        """Evaluate an arithmetic expression without raising; failures come back as values."""
        try:
            return self._evaluate(expression)
        except EvaluationError as exc:
            logger.info("evaluator.rejected", extra={"expression": expression, "reason": exc.message})
            return EvaluationFailure(expression=expression, message=exc.message)

    def evaluate_or_raise(self, expression: str) -> EvaluationSuccess:
        result = self.evaluate(expression)
        if isinstance(result, EvaluationFailure):
            raise EvaluationError(result.message, details={"expression": expression})
        return result

    @cached_property
    def langchain_tool(self):
        evaluator = self

        @tool("evaluator", return_direct=True)
        def _evaluator(expression: str) -> str:
            """Evaluate an arithmetic expression (+, -, *, /, parentheses) and return the formatted result."""
            return evaluator.evaluate_or_raise(expression).formatted

        return _evaluator

    def _evaluate(self, expression: str) -> EvaluationSuccess:
        cleaned = _WHITESPACE.sub("", expression)
        if not cleaned:
            raise EvaluationError("Expression cannot be empty.")

        if len(cleaned) > self.MAX_EXPRESSION_LENGTH:
            raise EvaluationError(f"Expression exceeds {self.MAX_EXPRESSION_LENGTH} characters.")

        if _LARGE_NUMBER.search(cleaned):
            return self._evaluate_exact(expression, cleaned)

        value = _Parser(_tokenize(cleaned)).parse()
        if not math.isfinite(value):
            raise EvaluationError("Result is not a finite number.")

        # Normalizes -0.0 so equal results render identically.
        value += 0.0
        return EvaluationSuccess(expression=expression, value=value, formatted=format_number(value))

    def _evaluate_exact(self, expression: str, cleaned: str) -> EvaluationSuccess:
        # Only a single binary operation on two integers is supported here.
        match = _EXACT_BINARY_OPERATION.fullmatch(cleaned)
        if match is None:
            raise EvaluationError("Complex expression not supported")

        left, symbol, right = int(match.group(1)), match.group(2), int(match.group(3))
        if symbol == "/" and right == 0:
            raise EvaluationError("Division by zero")

        result = str(self._EXACT_OPERATORS[symbol](left, right))
        return EvaluationSuccess(expression=expression, value=result, exact=True, formatted=result)
