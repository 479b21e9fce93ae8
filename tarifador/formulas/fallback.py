"""
Restricted arithmetic parser used when the primary evaluator rejects an expression.
Only numeric literals, arithmetic, comparisons and conditionals are understood.
"""
import math
import re
from typing import List, Optional

# Independent of the primary evaluator's limit; deep but otherwise plain arithmetic lands here
MAX_FALLBACK_DEPTH = 120

_TOKEN = re.compile(
    r"\s*(?:"
    r"(?P<number>(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)"
    r"|(?P<op>\*\*|<=|>=|==|!=|<>|[-+*/%^()<>?:])"
    r"|(?P<word>[^\W\d]\w*)"
    r")"
)

_KEYWORDS = {"if", "else"}
_COMPARISONS = {"<", ">", "<=", ">=", "==", "!=", "<>"}


class FallbackError(ValueError):
    """Raised when an expression is outside the restricted grammar or cannot be reduced."""


def tokenize(expression: str) -> List[str]:
    tokens: List[str] = []
    position = 0
    text = expression.rstrip()
    while position < len(text):
        match = _TOKEN.match(text, position)
        if not match or match.end() == position:
            raise FallbackError(f"Unexpected character at position {position}: {text[position]!r}")
        word = match.group("word")
        if word is not None and word not in _KEYWORDS:
            raise FallbackError(f"Identifiers are not allowed here: {word}")
        tokens.append(match.group("number") or match.group("op") or word)
        position = match.end()
    return tokens


# -----------------------------
# AST nodes
# -----------------------------

class Number:
    def __init__(self, value: float):
        self.value = value

    def evaluate(self) -> float:
        return self.value

    def __repr__(self):
        return f"Number({self.value})"


class Negate:
    def __init__(self, operand):
        self.operand = operand

    def evaluate(self) -> float:
        return -self.operand.evaluate()

    def __repr__(self):
        return f"Negate({self.operand})"


class BinOp:
    def __init__(self, left, operator: str, right):
        self.left = left
        self.operator = operator
        self.right = right

    def evaluate(self) -> float:
        left = self.left.evaluate()
        right = self.right.evaluate()
        try:
            if self.operator == "+":
                return left + right
            if self.operator == "-":
                return left - right
            if self.operator == "*":
                return left * right
            if self.operator == "/":
                return left / right
            if self.operator == "%":
                return left % right
            if self.operator in ("^", "**"):
                result = left ** right
                if isinstance(result, complex):
                    raise FallbackError("Power produced a complex number")
                return result
        except ZeroDivisionError:
            raise FallbackError("Division by zero")
        except OverflowError:
            raise FallbackError("Numeric overflow")
        raise FallbackError(f"Unknown operator: {self.operator}")

    def __repr__(self):
        return f"BinOp({self.left} {self.operator} {self.right})"


class Compare:
    def __init__(self, left, operator: str, right):
        self.left = left
        self.operator = operator
        self.right = right

    def evaluate(self) -> float:
        left = self.left.evaluate()
        right = self.right.evaluate()
        outcome = {
            "<": left < right,
            ">": left > right,
            "<=": left <= right,
            ">=": left >= right,
            "==": left == right,
            "!=": left != right,
            "<>": left != right,
        }[self.operator]
        return 1.0 if outcome else 0.0

    def __repr__(self):
        return f"Compare({self.left} {self.operator} {self.right})"


class Conditional:
    def __init__(self, condition, when_true, when_false):
        self.condition = condition
        self.when_true = when_true
        self.when_false = when_false

    def evaluate(self) -> float:
        if self.condition.evaluate() != 0:
            return self.when_true.evaluate()
        return self.when_false.evaluate()

    def __repr__(self):
        return f"Conditional({self.condition} ? {self.when_true} : {self.when_false})"


# -----------------------------
# Recursive-descent parser
# -----------------------------

class _Parser:
    def __init__(self, tokens: List[str]):
        self.tokens = tokens
        self.position = 0
        self.depth = 0

    def peek(self) -> Optional[str]:
        return self.tokens[self.position] if self.position < len(self.tokens) else None

    def take(self, expected: Optional[str] = None) -> str:
        token = self.peek()
        if token is None:
            raise FallbackError("Unexpected end of expression")
        if expected is not None and token != expected:
            raise FallbackError(f"Expected {expected!r}, found {token!r}")
        self.position += 1
        return token

    def parse(self):
        tree = self.parse_conditional()
        if self.peek() is not None:
            raise FallbackError(f"Unexpected token: {self.peek()!r}")
        return tree

    def parse_conditional(self):
        """Both `cond ? a : b` and `a if cond else b`."""
        head = self.parse_comparison()
        if self.peek() == "?":
            self.take("?")
            when_true = self.parse_conditional()
            self.take(":")
            when_false = self.parse_conditional()
            return Conditional(head, when_true, when_false)
        if self.peek() == "if":
            self.take("if")
            condition = self.parse_comparison()
            self.take("else")
            when_false = self.parse_conditional()
            return Conditional(condition, head, when_false)
        return head

    def parse_comparison(self):
        tree = self.parse_sum()
        while self.peek() in _COMPARISONS:
            operator = self.take()
            tree = Compare(tree, operator, self.parse_sum())
        return tree

    def parse_sum(self):
        tree = self.parse_term()
        while self.peek() in ("+", "-"):
            operator = self.take()
            tree = BinOp(tree, operator, self.parse_term())
        return tree

    def parse_term(self):
        tree = self.parse_unary()
        while self.peek() in ("*", "/", "%"):
            operator = self.take()
            tree = BinOp(tree, operator, self.parse_unary())
        return tree

    def parse_unary(self):
        if self.peek() == "-":
            self.take()
            return Negate(self.parse_unary())
        if self.peek() == "+":
            self.take()
            return self.parse_unary()
        return self.parse_power()

    def parse_power(self):
        """Exponentiation is right-associative and binds tighter than unary minus on its left."""
        base = self.parse_primary()
        if self.peek() in ("^", "**"):
            operator = self.take()
            return BinOp(base, operator, self.parse_unary())
        return base

    def parse_primary(self):
        token = self.peek()
        if token == "(":
            self.take("(")
            self.depth += 1
            if self.depth > MAX_FALLBACK_DEPTH:
                raise FallbackError("Expression nesting too deep")
            tree = self.parse_conditional()
            self.take(")")
            self.depth -= 1
            return tree
        token = self.take()
        try:
            return Number(float(token))
        except ValueError:
            raise FallbackError(f"Unexpected token: {token!r}")


def parse(expression: str):
    """Builds the restricted AST for an already-substituted expression."""
    try:
        return _Parser(tokenize(expression)).parse()
    except RecursionError:
        raise FallbackError("Expression nesting too deep")


def evaluate(expression: str) -> float:
    """Evaluates an expression containing only literals; raises FallbackError otherwise."""
    tree = parse(expression)
    try:
        result = tree.evaluate()
    except RecursionError:
        raise FallbackError("Expression nesting too deep")
    if not math.isfinite(result):
        raise FallbackError(f"Expression did not reduce to a finite number: {result}")
    return float(result)
