"""
Static and trial validation of formula text.
Used when configuring methods and custom formulas; reports problems instead of raising.
"""
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import BaseModel, Field

from tarifador.core.exceptions import TariffError
from tarifador.formulas.evaluator import FUNCTIONS, nesting_depth, referenced_identifiers
from tarifador.formulas.preprocessor import evaluate_formula

SPREADSHEET_FUNCTIONS = ("SI", "REDONDEAR", "PROMEDIO", "DIASEMANA", "MES", "TRIMESTRE", "ESFINDESEMANA", "TARIFAESCALONADA")

# Variables the context builder always provides
KNOWN_VARIABLES = (
    "Valor", "Peaje", "Cantidad", "Palets",
    "Distancia", "DistanciaReal", "DistanciaAerea",
    "DiaSemana", "Dia", "Mes", "Trimestre", "EsFinDeSemana", "EsFeriado", "Hora", "Fecha",
    "TipoTramo", "TipoUnidad", "CapacidadMaxima", "PesoMaximo", "CantidadVehiculos",
    "TipoCliente", "CategoriaCliente", "DescuentoCliente",
    "Peso", "Volumen", "CantidadBultos", "TipoCarga", "Urgencia",
)

SAMPLE_CONTEXT: Dict[str, Any] = {
    "Valor": 100,
    "Peaje": 10,
    "Cantidad": 5,
    "Palets": 5,
    "Distancia": 50,
    "Peso": 1000,
    "Volumen": 20,
    "DiaSemana": 2,
    "Mes": 6,
}

LONG_FORMULA_CHARS = 500

_CALL = re.compile(r"\b([^\W\d]\w*)\s*\(")
_OPERATORS = re.compile(r"\*\*|<=|>=|==|!=|[-+*/%^<>]")


class FormulaValidationReport(BaseModel):
    """Outcome of validating one formula."""

    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    variables: List[str] = Field(default_factory=list)
    unknown_variables: List[str] = Field(default_factory=list)
    functions: List[str] = Field(default_factory=list)
    trial_result: Optional[float] = None
    trial_error: Optional[str] = None
    complexity: int = 0
    complexity_level: str = "low"


def _complexity(formula: str, functions: List[str]) -> int:
    operators = len(_OPERATORS.findall(formula))
    return operators + 2 * len(functions) + 3 * nesting_depth(formula)


def _level(score: int) -> str:
    if score <= 10:
        return "low"
    if score <= 25:
        return "medium"
    return "high"


def validate_formula(
    formula: str,
    available_variables: Optional[Iterable[str]] = None,
    sample: Optional[Mapping[str, Any]] = None,
) -> FormulaValidationReport:
    errors: List[str] = []
    warnings: List[str] = []

    if not formula or not formula.strip():
        return FormulaValidationReport(valid=False, errors=["Formula is empty"])

    if formula.count("(") != formula.count(")"):
        errors.append("Unbalanced parentheses")
    if re.search(r"/\s*0(?![\d.,])", formula):
        warnings.append("Possible division by zero")
    if len(formula) > LONG_FORMULA_CHARS:
        warnings.append("Formula is very long, consider simplifying it")

    known = set(available_variables) if available_variables is not None else set(KNOWN_VARIABLES)
    variables = sorted(referenced_identifiers(formula))
    unknown = [v for v in variables if v not in known]
    for name in unknown:
        errors.append(f"Unknown variable: {name}")

    allowed_functions = set(SPREADSHEET_FUNCTIONS) | set(FUNCTIONS)
    functions = sorted({name for name in _CALL.findall(formula)})
    for name in functions:
        if name not in allowed_functions:
            errors.append(f"Unknown function: {name}")

    missing_core = [v for v in ("Valor", "Cantidad", "Palets") if v in known and v not in variables]
    if len(missing_core) == 3:
        warnings.append(f"Consider using: {', '.join(missing_core)}")

    trial_context: Dict[str, Any] = {name: 0 for name in known}
    trial_context.update(SAMPLE_CONTEXT)
    trial_context.update(sample or {})

    trial_result = None
    trial_error = None
    try:
        trial_result = evaluate_formula(formula, trial_context)
    except TariffError as e:
        trial_error = e.message
        if not unknown:
            errors.append(f"Trial evaluation failed: {e.message}")

    score = _complexity(formula, functions)
    return FormulaValidationReport(
        valid=not errors,
        errors=errors,
        warnings=warnings,
        variables=variables,
        unknown_variables=unknown,
        functions=functions,
        trial_result=trial_result,
        trial_error=trial_error,
        complexity=score,
        complexity_level=_level(score),
    )
