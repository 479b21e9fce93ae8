"""
Spreadsheet-style functions of the formula language.
Each function call is rewritten into plain arithmetic before evaluation.
"""
import math
import re
from datetime import datetime
from typing import Any, Callable, List, Mapping, Optional, Tuple

from tarifador.core.config import settings
from tarifador.core.exceptions import EvaluationError
from tarifador.core.utils import js_weekday
from tarifador.formulas.evaluator import evaluate, split_string_literals

# Guards against rewrite loops on malformed input
MAX_REWRITES = 500

Clock = Callable[[], datetime]


def _closing_paren(expression: str, start: int, name: str) -> int:
    """Index of the parenthesis closing the call whose arguments begin at `start`."""
    level = 0
    quote = None
    for index in range(start, len(expression)):
        char = expression[index]
        if quote:
            if char == quote:
                quote = None
        elif char in ("'", '"'):
            quote = char
        elif char == "(":
            level += 1
        elif char == ")":
            if level == 0:
                return index
            level -= 1
    raise EvaluationError(f"Unbalanced parentheses in {name}()", details={"expression": expression})


def split_arguments(text: str) -> List[str]:
    """Splits a call's argument text at top-level `;` separators."""
    args: List[str] = []
    level = 0
    quote = None
    current = []
    for char in text:
        if quote:
            if char == quote:
                quote = None
        elif char in ("'", '"'):
            quote = char
        elif char == "(":
            level += 1
        elif char == ")":
            level -= 1
        elif char == ";" and level == 0:
            args.append("".join(current).strip())
            current = []
            continue
        current.append(char)
    args.append("".join(current).strip())
    return args


def _quoted_spans(expression: str) -> List[Tuple[int, int]]:
    spans = []
    offset = 0
    for is_literal, segment in split_string_literals(expression):
        if is_literal:
            spans.append((offset, offset + len(segment)))
        offset += len(segment)
    return spans


def _rewrite(expression: str, name: str, build: Callable[[List[str]], str]) -> str:
    """
    Replaces every call of `name` outside string literals by the text `build` returns for its arguments.
    The last call is rewritten first so nested calls of the same function are resolved inside-out.
    """
    pattern = re.compile(rf"\b{name}\s*\(")
    for _ in range(MAX_REWRITES):
        spans = _quoted_spans(expression)
        matches = [
            m for m in pattern.finditer(expression)
            if not any(start <= m.start() < end for start, end in spans)
        ]
        if not matches:
            return expression
        match = matches[-1]
        end = _closing_paren(expression, match.end(), name)
        args = split_arguments(expression[match.end():end])
        expression = expression[:match.start()] + build(args) + expression[end + 1:]
    raise EvaluationError(f"Too many {name}() calls", details={"expression": expression})


def _literal(value: float) -> str:
    text = repr(float(value))
    return f"({text})" if value < 0 else text


def _parse_number(text: str, function: str) -> float:
    try:
        return float(text.strip().replace(",", "."))
    except ValueError:
        raise EvaluationError(f"{function}() expects a numeric literal, found {text!r}")


# -----------------------------
# Individual rewrites
# -----------------------------

def rewrite_si(expression: str) -> str:
    """SI(cond;a;b) -> a when cond is truthy (non-zero), else b."""
    def build(args: List[str]) -> str:
        if len(args) != 3:
            raise EvaluationError(f"SI() expects 3 arguments, got {len(args)}")
        condition, when_true, when_false = args
        return f"(({when_true}) if ({condition}) else ({when_false}))"

    return _rewrite(expression, "SI", build)


def rewrite_redondear(expression: str) -> str:
    """REDONDEAR(value;digits) -> scale, round half away from zero, unscale."""
    def build(args: List[str]) -> str:
        if len(args) not in (1, 2) or not args[0]:
            raise EvaluationError("REDONDEAR() expects a value and an optional number of decimals")
        value = args[0]
        digits = args[1] if len(args) == 2 and args[1] else "0"
        if re.fullmatch(r"\d{1,2}", digits):
            factor = 10 ** int(digits)
            return f"(round(({value}) * {factor}) / {factor})"
        return f"(round(({value}) * 10 ** ({digits})) / 10 ** ({digits}))"

    return _rewrite(expression, "REDONDEAR", build)


def rewrite_promedio(expression: str) -> str:
    """PROMEDIO(v1;...;vn) -> (v1 + ... + vn) / n."""
    def build(args: List[str]) -> str:
        operands = [a for a in args if a]
        if not operands:
            raise EvaluationError("PROMEDIO() expects at least one value")
        total = " + ".join(f"({a})" for a in operands)
        return f"(({total}) / {len(operands)})"

    return _rewrite(expression, "PROMEDIO", build)


def rewrite_calendar(expression: str, context: Mapping[str, Any], clock: Clock) -> str:
    """DIASEMANA(), MES(), TRIMESTRE() and ESFINDESEMANA() become literals from the context or the clock."""

    def weekday(_: List[str]) -> str:
        if context.get("DiaSemana") is not None:
            return str(int(context["DiaSemana"]))
        return str(js_weekday(clock()))

    def month(_: List[str]) -> str:
        if context.get("Mes") is not None:
            return str(int(context["Mes"]))
        return str(clock().month)

    def quarter(_: List[str]) -> str:
        if context.get("Trimestre") is not None:
            return str(int(context["Trimestre"]))
        current_month = context.get("Mes") or clock().month
        return str(math.ceil(int(current_month) / 3))

    def weekend(_: List[str]) -> str:
        if context.get("EsFinDeSemana") is not None:
            return "1" if context["EsFinDeSemana"] else "0"
        return "1" if js_weekday(clock()) in (0, 6) else "0"

    expression = _rewrite(expression, "DIASEMANA", weekday)
    expression = _rewrite(expression, "MES", month)
    expression = _rewrite(expression, "TRIMESTRE", quarter)
    return _rewrite(expression, "ESFINDESEMANA", weekend)


def rewrite_tarifa_escalonada(expression: str) -> str:
    """
    TARIFAESCALONADA(value;r1:t1;r2:t2;...) -> the rate of the smallest threshold >= value,
    or the top tier's rate when value exceeds every threshold.

    Thresholds are sorted ascending with a stable sort, so among equal thresholds the one
    written first wins.
    """
    def build(args: List[str]) -> str:
        if len(args) < 2 or not args[0]:
            raise EvaluationError("TARIFAESCALONADA() expects a value and at least one threshold:rate pair")
        value = args[0]
        tiers = []
        for pair in args[1:]:
            threshold, sep, rate = pair.partition(":")
            if not sep:
                raise EvaluationError(f"TARIFAESCALONADA() tier must be threshold:rate, found {pair!r}")
            tiers.append((_parse_number(threshold, "TARIFAESCALONADA"), _parse_number(rate, "TARIFAESCALONADA")))
        tiers.sort(key=lambda tier: tier[0])

        nested = _literal(tiers[-1][1])
        for threshold, rate in reversed(tiers):
            nested = f"({_literal(rate)} if ({value}) <= {_literal(threshold)} else {nested})"
        return f"({nested})"

    return _rewrite(expression, "TARIFAESCALONADA", build)


def preprocess(expression: str, context: Optional[Mapping[str, Any]] = None, clock: Optional[Clock] = None) -> str:
    """Applies every rewrite in its fixed order."""
    context = context or {}
    clock = clock or datetime.now
    result = rewrite_si(expression)
    result = rewrite_redondear(result)
    result = rewrite_promedio(result)
    result = rewrite_calendar(result, context, clock)
    return rewrite_tarifa_escalonada(result)


def evaluate_formula(formula: str, context: Mapping[str, Any], clock: Optional[Clock] = None) -> float:
    """Preprocesses and evaluates a formula of the tariff language."""
    if len(formula) > settings.MAX_FORMULA_LENGTH:
        raise EvaluationError(
            f"Formula longer than {settings.MAX_FORMULA_LENGTH} characters", details={"length": len(formula)}
        )
    expanded = preprocess(formula, context, clock)
    return evaluate(expanded, context, max_length=max(len(expanded), settings.MAX_FORMULA_LENGTH))
