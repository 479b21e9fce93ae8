"""
Expression evaluator for tariff formulas.
Substitutes context variables into the formula text and interprets a whitelisted Python AST.
"""
import ast
import json
import math
import operator
import re
import statistics
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from tarifador.core.config import settings
from tarifador.core.exceptions import EvaluationError
from tarifador.core.logger import logger
from tarifador.core.utils import epoch_millis, round_half_away
from tarifador.formulas import fallback

_STRING_LITERAL = re.compile(r'"(?:[^"\\]|\\.)*"|\'(?:[^\'\\]|\\.)*\'')
_IDENTIFIER = re.compile(r"(?<![\w.])([^\W\d]\w*)(\s*\()?")

RESERVED_WORDS = {"if", "else", "and", "or", "not", "True", "False"}


def _mean(*values: float) -> float:
    return statistics.fmean(values)


def _median(*values: float) -> float:
    return statistics.median(values)


def _std(*values: float) -> float:
    return statistics.stdev(values)


def _sum(*values: float) -> float:
    return math.fsum(values)


def _mod(value: float, divisor: float) -> float:
    return value % divisor


def _power(base: float, exponent: float) -> float:
    result = float(base) ** float(exponent)
    if isinstance(result, complex):
        raise ValueError("power produced a complex number")
    return result


def _round(value: float, digits: float = 0) -> float:
    return round_half_away(value, int(digits))


FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "min": min,
    "max": max,
    "abs": abs,
    "ceil": math.ceil,
    "floor": math.floor,
    "mean": _mean,
    "median": _median,
    "std": _std,
    "sum": _sum,
    "mod": _mod,
    "sqrt": math.sqrt,
    "power": _power,
    "pow": _power,
    "round": _round,
}

_BINARY_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.Pow: _power,
}

_COMPARISONS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
}


class _Rejected(Exception):
    """The primary evaluator cannot parse the expression; the restricted fallback may still."""


def split_string_literals(expression: str) -> List[Tuple[bool, str]]:
    """Splits an expression into (is_literal, text) segments around quoted strings."""
    parts: List[Tuple[bool, str]] = []
    last = 0
    for match in _STRING_LITERAL.finditer(expression):
        parts.append((False, expression[last:match.start()]))
        parts.append((True, match.group(0)))
        last = match.end()
    parts.append((False, expression[last:]))
    return parts


def referenced_identifiers(expression: str) -> Set[str]:
    """Variable names referenced by an expression; function names and keywords are excluded."""
    names: Set[str] = set()
    for is_literal, segment in split_string_literals(expression):
        if is_literal:
            continue
        for match in _IDENTIFIER.finditer(segment):
            name, call = match.group(1), match.group(2)
            if call is None and name not in RESERVED_WORDS:
                names.add(name)
    return names


def format_value(name: str, value: Any) -> str:
    """Renders a context value as a literal of the expression language."""
    if value is None:
        return "0"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, datetime):
        return str(epoch_millis(value))
    if isinstance(value, date):
        return str(epoch_millis(datetime(value.year, value.month, value.day)))
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
        if not math.isfinite(number):
            raise EvaluationError(f"Variable {name} is not a finite number", details={"variable": name})
        text = str(value) if isinstance(value, int) else repr(number)
        return f"({text})" if number < 0 else text
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    raise EvaluationError(
        f"Variable {name} has an unsupported type: {type(value).__name__}", details={"variable": name}
    )


def substitute_variables(expression: str, context: Mapping[str, Any]) -> str:
    """
    Replaces whole-word identifiers found in the context by their literal values and normalizes
    the locale artifacts of the formula language outside string literals: decimal commas become
    points, `;` separates arguments and `^` is exponentiation.
    """
    output = []
    for is_literal, segment in split_string_literals(expression):
        if is_literal:
            output.append(segment)
            continue
        segment = segment.replace(",", ".").replace(";", ",").replace("^", "**")

        def replace(match: "re.Match[str]") -> str:
            name, call = match.group(1), match.group(2)
            if call is not None or name in RESERVED_WORDS or name not in context:
                return match.group(0)
            return format_value(name, context[name])

        output.append(_IDENTIFIER.sub(replace, segment))
    return "".join(output)


def nesting_depth(expression: str) -> int:
    depth = deepest = 0
    for is_literal, segment in split_string_literals(expression):
        if is_literal:
            continue
        for char in segment:
            if char == "(":
                depth += 1
                deepest = max(deepest, depth)
            elif char == ")":
                depth -= 1
    return deepest


def _number(value: Any) -> float:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    raise EvaluationError(f"Non-numeric operand in arithmetic: {value!r}")


class _Interpreter(ast.NodeVisitor):
    """Evaluates a validated expression tree. Any node without a visit method is rejected."""

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_Constant(self, node: ast.Constant) -> Any:
        if isinstance(node.value, (bool, int, float, str)):
            return node.value
        raise EvaluationError(f"Unsupported literal: {node.value!r}")

    def visit_Name(self, node: ast.Name) -> Any:
        raise EvaluationError(f"Unknown identifier: {node.id}", details={"identifier": node.id})

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            return -_number(operand)
        if isinstance(node.op, ast.UAdd):
            return +_number(operand)
        return self.generic_visit(node)

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        handler = _BINARY_OPERATORS.get(type(node.op))
        if handler is None:
            return self.generic_visit(node)
        left = _number(self.visit(node.left))
        right = _number(self.visit(node.right))
        try:
            return handler(left, right)
        except ZeroDivisionError:
            raise EvaluationError("Division by zero")
        except (OverflowError, ValueError) as e:
            raise EvaluationError(f"Arithmetic error: {e}")

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        values = (self.visit(v) for v in node.values)
        if isinstance(node.op, ast.And):
            return all(values)
        return any(values)

    def visit_Compare(self, node: ast.Compare) -> Any:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            handler = _COMPARISONS.get(type(op))
            if handler is None:
                return self.generic_visit(node)
            right = self.visit(comparator)
            try:
                if not handler(left, right):
                    return False
            except TypeError:
                raise EvaluationError(f"Cannot compare {left!r} with {right!r}")
            left = right
        return True

    def visit_IfExp(self, node: ast.IfExp) -> Any:
        if self.visit(node.test):
            return self.visit(node.body)
        return self.visit(node.orelse)

    def visit_Call(self, node: ast.Call) -> Any:
        name = node.func.id if isinstance(node.func, ast.Name) else None
        if name not in FUNCTIONS or node.keywords:
            raise EvaluationError(f"Unknown function: {name or ast.dump(node.func)}")
        args = [_number(self.visit(arg)) for arg in node.args]
        try:
            return FUNCTIONS[name](*args)
        except ZeroDivisionError:
            raise EvaluationError(f"Division by zero in {name}()")
        except (TypeError, ValueError, OverflowError) as e:
            raise EvaluationError(f"Invalid call to {name}(): {e}")

    def generic_visit(self, node: ast.AST) -> Any:
        raise EvaluationError(f"Unsupported syntax: {type(node).__name__}")


def _check_names(tree: ast.AST) -> None:
    """Rejects unknown identifiers anywhere in the tree, including untaken branches."""
    callees = {id(n.func) for n in ast.walk(tree) if isinstance(n, ast.Call)}
    for node in ast.walk(tree):
        if isinstance(node, ast.Name) and id(node) not in callees:
            raise EvaluationError(f"Unknown identifier: {node.id}", details={"identifier": node.id})
        if isinstance(node, (ast.Starred, ast.keyword, ast.Attribute, ast.Subscript, ast.Lambda)):
            raise EvaluationError(f"Unsupported syntax: {type(node).__name__}")


def _primary(text: str, max_depth: int) -> Any:
    if nesting_depth(text) > max_depth:
        raise _Rejected(f"nesting deeper than {max_depth}")
    try:
        tree = ast.parse(text.strip(), mode="eval")
    except (SyntaxError, ValueError, MemoryError, RecursionError) as e:
        raise _Rejected(str(e))
    _check_names(tree)
    try:
        return _Interpreter().visit(tree)
    except RecursionError:
        raise _Rejected("expression too deep to interpret")


def _finite(value: Any, expression: str) -> float:
    if isinstance(value, bool):
        value = int(value)
    if not isinstance(value, (int, float)):
        raise EvaluationError(
            f"Expression did not reduce to a number: {value!r}", details={"expression": expression}
        )
    if not math.isfinite(value):
        raise EvaluationError(
            f"Expression did not reduce to a finite number: {value}", details={"expression": expression}
        )
    return float(value)


def evaluate(
    expression: str,
    context: Mapping[str, Any],
    max_length: Optional[int] = None,
    max_depth: Optional[int] = None,
) -> float:
    """
    Evaluates an expression against a variable context and returns a finite float.

    Raises EvaluationError on unknown identifiers, unsupported syntax or non-finite results.
    Expressions the primary parser cannot handle are retried once with the restricted
    arithmetic fallback; if that also fails the primary error is raised.
    """
    limit = max_length or settings.MAX_FORMULA_LENGTH
    if not expression or not expression.strip():
        raise EvaluationError("Empty expression")
    if len(expression) > limit:
        raise EvaluationError(
            f"Expression longer than {limit} characters", details={"length": len(expression)}
        )

    text = substitute_variables(expression, context)
    try:
        value = _primary(text, max_depth or settings.MAX_NESTING_DEPTH)
    except _Rejected as rejected:
        logger.warning(f"Primary evaluator rejected expression ({rejected}); using restricted fallback")
        try:
            value = fallback.evaluate(text)
        except fallback.FallbackError as e:
            raise EvaluationError(
                f"Invalid expression: {rejected}",
                details={"expression": expression, "fallback_error": str(e)},
            )
    return _finite(value, expression)
