"""
Unit tests for the spreadsheet-style functions of the formula language.
"""
from datetime import datetime

import pytest

from tarifador.core.exceptions import EvaluationError
from tarifador.formulas.preprocessor import evaluate_formula, preprocess, split_arguments


def saturday():
    return datetime(2024, 3, 16, 12, 0)


@pytest.mark.parametrize("condition, expected", [
    ("1", 10),
    ("0", 20),
    ("-3", 10),
    ("0,5", 10),
    ("2 - 2", 20),
])
def test_si_truthiness(condition, expected):
    """SI returns the second argument for any non-zero condition."""
    assert evaluate_formula(f"SI({condition};10;20)", {}) == expected


def test_si_with_comparison_and_nesting():
    formula = "SI(Valor > 100; SI(Valor > 200; 3; 2); 1)"

    assert evaluate_formula(formula, {"Valor": 250}) == 3
    assert evaluate_formula(formula, {"Valor": 150}) == 2
    assert evaluate_formula(formula, {"Valor": 50}) == 1


def test_si_wrong_arity():
    with pytest.raises(EvaluationError):
        evaluate_formula("SI(1;2)", {})


@pytest.mark.parametrize("formula, expected", [
    ("REDONDEAR(1.005;2)", 1.01),
    ("REDONDEAR(-1.005;2)", -1.01),
    ("REDONDEAR(2.345;1)", 2.3),
    ("REDONDEAR(2.5;0)", 3),
    ("REDONDEAR(Valor / 3;2)", 3.33),
    ("REDONDEAR(1234.5678;Digitos)", 1234.57),
])
def test_redondear_half_away_from_zero(formula, expected):
    """Values within 1e-9 of a half boundary round away from zero."""
    assert evaluate_formula(formula, {"Valor": 10, "Digitos": 2}) == pytest.approx(expected, abs=1e-9)


def test_promedio():
    assert preprocess("PROMEDIO(a;b)") == "(((a) + (b)) / 2)"
    assert evaluate_formula("PROMEDIO(2;4;9)", {}) == 5
    assert evaluate_formula("PROMEDIO(Valor;max(1;3))", {"Valor": 5}) == 4


def test_calendar_functions_from_context():
    context = {"DiaSemana": 3, "Mes": 11, "EsFinDeSemana": False}

    assert evaluate_formula("DIASEMANA()", context) == 3
    assert evaluate_formula("MES()", context) == 11
    assert evaluate_formula("TRIMESTRE()", context) == 4
    assert evaluate_formula("ESFINDESEMANA()", context) == 0
    assert evaluate_formula("TRIMESTRE()", {"Trimestre": 2, "Mes": 11}) == 2


def test_calendar_functions_from_clock():
    """Without context values the wall clock is used; Sunday is 0."""
    assert evaluate_formula("DIASEMANA()", {}, clock=saturday) == 6
    assert evaluate_formula("MES()", {}, clock=saturday) == 3
    assert evaluate_formula("TRIMESTRE()", {}, clock=saturday) == 1
    assert evaluate_formula("ESFINDESEMANA()", {}, clock=saturday) == 1


def test_trimestre_not_confused_with_mes():
    assert preprocess("TRIMESTRE() + MES()", {"Mes": 5}) == "2 + 5"


@pytest.mark.parametrize("value, expected", [
    (50, 10),
    (100, 10),
    (150, 20),
    (200, 20),
    (250, 30),
    (350, 30),
])
def test_tarifa_escalonada(value, expected):
    """Smallest threshold >= value wins; above every threshold the top tier applies."""
    formula = "TARIFAESCALONADA(Peso; 100:10; 200:20; 300:30)"

    assert evaluate_formula(formula, {"Peso": value}) == expected


def test_tarifa_escalonada_literal_value():
    assert evaluate_formula("TARIFAESCALONADA(150; 100:10; 200:20; 300:30)", {}) == 20


def test_tarifa_escalonada_unsorted_thresholds():
    assert evaluate_formula("TARIFAESCALONADA(150; 300:30; 100:10; 200:20)", {}) == 20


def test_tarifa_escalonada_duplicate_thresholds_first_wins():
    assert evaluate_formula("TARIFAESCALONADA(50; 100:10; 100:15; 200:20)", {}) == 10


def test_tarifa_escalonada_decimal_commas():
    assert evaluate_formula("TARIFAESCALONADA(1,5; 1,0:5; 2,0:7,5)", {}) == 7.5


@pytest.mark.parametrize("formula", [
    "TARIFAESCALONADA(150)",
    "TARIFAESCALONADA(150; 100-10)",
    "TARIFAESCALONADA(150; cien:10)",
])
def test_tarifa_escalonada_malformed(formula):
    with pytest.raises(EvaluationError):
        evaluate_formula(formula, {})


def test_unbalanced_call():
    with pytest.raises(EvaluationError):
        evaluate_formula("SI(1;2;3", {})


def test_split_arguments_respects_nesting_and_strings():
    assert split_arguments('max(1;2); "a;b"; 3') == ["max(1;2)", '"a;b"', "3"]


def test_function_names_inside_strings_left_alone():
    assert preprocess('SI(TipoCarga == "SI(x)";1;2)') == '((1) if (TipoCarga == "SI(x)") else (2))'
    assert evaluate_formula('SI(TipoCarga == "SI(x)";1;2)', {"TipoCarga": "SI(x)"}) == 1
    assert evaluate_formula('SI(TipoCarga == "SI(x)";1;2)', {"TipoCarga": "otro"}) == 2
