"""
Unit tests for the expression evaluator.
Validates arithmetic semantics, variable substitution and rejection of unsafe input.
"""
from datetime import datetime

import pytest

from tarifador.core.exceptions import EvaluationError
from tarifador.formulas.evaluator import evaluate, referenced_identifiers, substitute_variables


def test_operator_precedence():
    """Multiplication binds tighter than addition."""
    assert evaluate("2+3*4", {}) == 14


@pytest.mark.parametrize("expression, expected", [
    ("10 / 4", 2.5),
    ("2 ^ 3", 8),
    ("-3 + 5", 2),
    ("(1 + 2) * 3", 9),
    ("7 % 4", 3),
    ("1,5 * 2", 3),
    ("2 ^ 3 ^ 2", 512),
])
def test_arithmetic(expression, expected):
    assert evaluate(expression, {}) == pytest.approx(expected)


@pytest.mark.parametrize("expression, expected", [
    ("max(1;5;3)", 5),
    ("min(4;2)", 2),
    ("abs(-4)", 4),
    ("ceil(1,2)", 2),
    ("floor(1.8)", 1),
    ("mean(1;2;3)", 2),
    ("median(3;1;2)", 2),
    ("std(2;4;4;4;5;5;7;9)", 2.138089935),
    ("sum(1;2;3)", 6),
    ("mod(10;3)", 1),
    ("sqrt(16)", 4),
    ("power(2;10)", 1024),
    ("round(2.5)", 3),
    ("round(-2.5)", -3),
    ("round(1.2345; 2)", 1.23),
])
def test_functions(expression, expected):
    assert evaluate(expression, {}) == pytest.approx(expected)


def test_whole_word_substitution():
    """A shorter identifier is never replaced inside a longer one."""
    context = {"Valor": 1, "ValorPeaje": 50}

    assert evaluate("ValorPeaje*2", context) == 100
    assert evaluate("Valor + ValorPeaje", context) == 51


def test_substitution_formats():
    """Strings become quoted literals, booleans 1/0, negatives are parenthesized."""
    text = substitute_variables(
        "TipoCliente == 'x' + EsFeriado + Valor",
        {"TipoCliente": "VIP", "EsFeriado": True, "Valor": -3},
    )

    assert text == "\"VIP\" == 'x' + 1 + (-3)"


def test_string_comparison():
    context = {"TipoCliente": "VIP"}

    assert evaluate('(100 if TipoCliente == "VIP" else 0)', context) == 100
    assert evaluate('(100 if TipoCliente == "PYME" else 0)', context) == 0


def test_boolean_and_negative_values():
    assert evaluate("EsFeriado * 10", {"EsFeriado": True}) == 10
    assert evaluate("Valor ^ 2", {"Valor": -3}) == 9


def test_date_substituted_as_epoch_millis():
    assert evaluate("Fecha", {"Fecha": datetime(1970, 1, 1, 0, 0, 1)}) == 1000


def test_unknown_identifier():
    with pytest.raises(EvaluationError) as exc_info:
        evaluate("Valor * Desconocida", {"Valor": 10})

    assert "Desconocida" in exc_info.value.message


def test_unknown_identifier_in_untaken_branch():
    with pytest.raises(EvaluationError):
        evaluate("(1 if 1 else Desconocida)", {})


@pytest.mark.parametrize("expression", [
    "__import__('os')",
    "(1).real",
    "open('x')",
    "[1, 2][0]",
    "lambda: 1",
])
def test_unsafe_syntax_rejected(expression):
    with pytest.raises(EvaluationError):
        evaluate(expression, {})


@pytest.mark.parametrize("expression", ["1 / 0", "mod(1; 0)", '"texto"', "sqrt(-1)", "10 ^ 400"])
def test_non_numeric_or_non_finite_results(expression):
    with pytest.raises(EvaluationError):
        evaluate(expression, {})


def test_non_finite_variable_rejected():
    with pytest.raises(EvaluationError):
        evaluate("Valor", {"Valor": float("nan")})


def test_length_cap():
    with pytest.raises(EvaluationError):
        evaluate("1+" * 1500 + "1", {})


def test_fallback_handles_ternary_operator():
    """`cond ? a : b` is not Python syntax; the restricted fallback evaluates it."""
    assert evaluate("Valor > 5 ? 10 : 20", {"Valor": 7}) == 10
    assert evaluate("Valor > 5 ? 10 : 20", {"Valor": 3}) == 20


def test_fallback_handles_deep_nesting():
    expression = "(" * 50 + "1+1" + ")" * 50

    assert evaluate(expression, {}) == 2


def test_fallback_failure_raises_evaluation_error():
    with pytest.raises(EvaluationError):
        evaluate("Desconocida > 5 ? 1 : 2", {})


def test_referenced_identifiers():
    names = referenced_identifiers('max(Valor; Distancia) + Peaje * 2 + SI(TipoCarga == "Peaje"; 1; 0)')

    assert names == {"Valor", "Distancia", "Peaje", "TipoCarga"}
