"""
Arithmetic evaluation for the math step.

Grammar (recursive descent, one function per level):

    expression := term (('+' | '-') term)*
    term       := unary (('*' | '/') unary)*
    unary      := ('+' | '-') unary | primary
    primary    := NUMBER | '(' expression ')'

Only numbers, the four operators and parentheses are accepted. 'x', '×' and
'÷' are read as multiply and divide so phrases like "3 x 4" work. Anything
else is an ExpressionError; nothing is ever handed to eval().
"""

import math
import re
from typing import Union

from .errors import ExpressionError

Number = Union[int, float]

_TOKEN_RE = re.compile(r"\s*(?:(\d+\.\d*|\.\d+|\d+)|(.))")
_OPERATOR_ALIASES = {"x": "*", "X": "*", "×": "*", "÷": "/"}
_SQRT_RE = re.compile(r"square\s+root|sqrt", re.IGNORECASE)


def _tokenize(text: str) -> list[str]:
    tokens = []
    for number, other in _TOKEN_RE.findall(text):
        if number:
            tokens.append(number)
            continue
        if other.isspace() or not other:
            continue
        other = _OPERATOR_ALIASES.get(other, other)
        if other not in "+-*/()":
            raise ExpressionError(f"Unexpected character '{other}' in expression", expression=text)
        tokens.append(other)
    return tokens


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def _peek(self):
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _advance(self) -> str:
        token = self._peek()
        if token is None:
            raise ExpressionError("Unexpected end of expression", expression=self.text)
        self.pos += 1
        return token

    def parse(self) -> Number:
        if not self.tokens:
            raise ExpressionError("Empty expression", expression=self.text)
        value = self.expression()
        if self._peek() is not None:
            raise ExpressionError(f"Unexpected token '{self._peek()}'", expression=self.text)
        return value

    def expression(self) -> Number:
        value = self.term()
        while self._peek() in ("+", "-"):
            op = self._advance()
            right = self.term()
            value = value + right if op == "+" else value - right
        return value

    def term(self) -> Number:
        value = self.unary()
        while self._peek() in ("*", "/"):
            op = self._advance()
            right = self.unary()
            if op == "*":
                value = value * right
            else:
                if right == 0:
                    raise ExpressionError("Division by zero", expression=self.text)
                value = value / right
        return value

    def unary(self) -> Number:
        if self._peek() in ("+", "-"):
            op = self._advance()
            operand = self.unary()
            return operand if op == "+" else -operand
        return self.primary()

    def primary(self) -> Number:
        token = self._advance()
        if token == "(":
            value = self.expression()
            if self._advance() != ")":
                raise ExpressionError("Unbalanced parentheses", expression=self.text)
            return value
        if token in "+-*/)":
            raise ExpressionError(f"Unexpected token '{token}'", expression=self.text)
        return float(token) if "." in token else int(token)


def _normalize(value: Number) -> Number:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def evaluate_expression(text: str) -> Number:
    """
    Evaluate a simple arithmetic expression.

    "square root of N" / "sqrt N" takes the first integer in the text and
    returns its square root. Integral float results come back as int, so
    "sqrt 25" is 5 and "10 / 2" is 5.

    Raises:
        ExpressionError: on empty input, stray characters, unbalanced
            parentheses or division by zero
    """
    if text is None or not str(text).strip():
        raise ExpressionError("Empty expression", expression=text)
    text = str(text).strip()

    if _SQRT_RE.search(text):
        match = re.search(r"\d+", text)
        if not match:
            raise ExpressionError("No number found for square root", expression=text)
        return _normalize(math.sqrt(int(match.group(0))))

    return _normalize(_Parser(text).parse())
