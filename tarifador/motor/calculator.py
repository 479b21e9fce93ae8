"""
Base tariff calculator.
Evaluates the resolved formula and splits its value into tariff, toll and extras.
"""
import math
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from tarifador.core.exceptions import InvalidFormulaDataError, NoApplicableRouteError, ValidationError
from tarifador.core.logger import logger
from tarifador.core.utils import round2
from tarifador.formulas.evaluator import referenced_identifiers
from tarifador.formulas.preprocessor import evaluate_formula
from tarifador.motor.context import TariffContext
from tarifador.motor.resolver import Resolution
from tarifador.motor.schemas import Breakdown, CalculationRequest, CalculationResult, RuleStep

WARNING_ZERO_TOTAL = "Calculated total is zero"
WARNING_NO_RATE = "No positive rate value (Valor) was found"


def formula_variables(context: TariffContext, resolution: Resolution, request: CalculationRequest) -> Dict[str, Any]:
    """
    Context variables completed with Valor and Peaje.
    Values set explicitly by the request win over the route tariff.
    """
    variables = dict(context.variables)
    tariff = resolution.tariff

    if variables.get("Valor") is None:
        if tariff is None:
            raise NoApplicableRouteError(
                f"No tariff found for route {request.origin_id} -> {request.destination_id} "
                f"({request.tramo_type.value}) on {request.date.date()}",
                details={"client_id": request.client_id, "tramo_type": request.tramo_type.value},
            )
        if tariff.rate is None:
            raise InvalidFormulaDataError(
                "Route tariff has no rate", details={"valid_from": str(tariff.valid_from)}
            )
        variables["Valor"] = tariff.rate

    if variables.get("Peaje") is None:
        variables["Peaje"] = tariff.toll if tariff else 0.0

    return variables


def calculate_base(
    context: TariffContext, resolution: Resolution, request: CalculationRequest
) -> Tuple[CalculationResult, Dict[str, Any]]:
    """Returns the base result and the variables the formula was evaluated with."""
    variables = formula_variables(context, resolution, request)
    value = evaluate_formula(resolution.formula, variables)

    toll = float(variables["Peaje"]) if "Peaje" in referenced_identifiers(resolution.formula) else 0.0
    toll = round2(toll)
    tariff_base = round2(value - toll)
    extras = round2(sum(extra.subtotal for extra in request.extras))
    total = round2(tariff_base + toll + extras)

    warnings: List[str] = list(resolution.warnings)
    if total == 0:
        warnings.append(WARNING_ZERO_TOTAL)
    rate = variables.get("Valor")
    if not isinstance(rate, (int, float)) or isinstance(rate, bool) or rate <= 0:
        warnings.append(WARNING_NO_RATE)

    logger.debug(f"Base tariff: method={resolution.method.code}, formula={resolution.formula!r}, value={value}")

    result = CalculationResult(
        tariff_base=tariff_base,
        toll=toll,
        extras=extras,
        total=total,
        method_used=resolution.method.code,
        formula_used=resolution.formula,
        warnings=warnings,
    )
    return result, variables


def ensure_valid(result: CalculationResult) -> None:
    """Rejects a final tariff or toll that is negative or not a number."""
    for name, value in (("tariff", result.tariff_base), ("toll", result.toll)):
        if math.isnan(value) or value < 0:
            raise ValidationError(
                f"Computed {name} is invalid: {value}",
                details={"tariff_base": result.tariff_base, "toll": result.toll, "total": result.total},
            )


def build_breakdown(
    result: CalculationResult,
    variables: Mapping[str, Any],
    request: CalculationRequest,
    steps: Sequence[RuleStep] = (),
) -> Breakdown:
    referenced = referenced_identifiers(result.formula_used)
    return Breakdown(
        formula=result.formula_used,
        variables={name: variables[name] for name in sorted(referenced) if name in variables},
        tariff_base=result.tariff_base,
        toll=result.toll,
        extras=result.extras,
        extras_detail=list(request.extras),
        rules=list(steps),
        total=result.total,
    )
