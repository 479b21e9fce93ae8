"""
Rule engine.
Applies conditional surcharges and discounts on top of a base result, in descending priority.
"""
from typing import Any, Dict, List, Mapping, Optional, Tuple

from tarifador.catalogo.repository import SCOPE_CLIENT_KEY, SCOPE_METHOD_KEY, Repository
from tarifador.catalogo.schemas import ModifierTarget, ModifierType, Rule, RuleModifier
from tarifador.core.exceptions import EvaluationError
from tarifador.core.logger import logger
from tarifador.core.utils import round2
from tarifador.formulas.preprocessor import evaluate_formula
from tarifador.motor.schemas import AppliedRule, CalculationRequest, CalculationResult, RuleStep

Amounts = Dict[str, float]

_FIELDS = {
    ModifierTarget.TARIFF: "tariff",
    ModifierTarget.TOLL: "toll",
    ModifierTarget.EXTRAS: "extras",
    ModifierTarget.TOTAL: "total",
}


def amounts_of(result: CalculationResult) -> Amounts:
    return {"tariff": result.tariff_base, "toll": result.toll, "extras": result.extras, "total": result.total}


def rule_view(
    variables: Mapping[str, Any], client_id: str, method_code: str, amounts: Amounts
) -> Dict[str, Any]:
    """Variables rule conditions are matched against: the formula context plus the running amounts."""
    view = dict(variables)
    view.update({
        SCOPE_CLIENT_KEY: client_id,
        SCOPE_METHOD_KEY: method_code,
        "tarifa": amounts["tariff"],
        "peaje": amounts["toll"],
        "extras": amounts["extras"],
        "total": amounts["total"],
    })
    return view


def _modified_value(modifier: RuleModifier, current: float, amounts: Amounts, variables: Mapping[str, Any]) -> float:
    if modifier.type == ModifierType.PERCENTAGE:
        return current * (1 + float(modifier.value) / 100)
    if modifier.type == ModifierType.FIXED:
        return current + float(modifier.value)

    scope = dict(variables)
    scope.update({
        "TarifaBase": amounts["tariff"],
        "PeajeCalculado": amounts["toll"],
        "Extras": amounts["extras"],
        "Total": amounts["total"],
        "ValorActual": current,
    })
    return evaluate_formula(str(modifier.value), scope)


def apply_modifier(amounts: Amounts, modifier: RuleModifier, variables: Mapping[str, Any]) -> Amounts:
    """
    Applies one modifier and keeps total == tariff + toll + extras.
    A change to the total itself is carried by the extras component.
    """
    updated = dict(amounts)
    field = _FIELDS[modifier.apply_to]
    new_value = _modified_value(modifier, amounts[field], amounts, variables)

    if field == "total":
        updated["extras"] += new_value - amounts["total"]
    else:
        updated[field] = new_value
    updated["total"] = updated["tariff"] + updated["toll"] + updated["extras"]
    return updated


def apply_rule(amounts: Amounts, rule: Rule, variables: Mapping[str, Any]) -> Amounts:
    for modifier in rule.modifiers:
        try:
            amounts = apply_modifier(amounts, modifier, variables)
        except EvaluationError as e:
            raise EvaluationError(
                f"Rule {rule.code}: modifier formula failed: {e.message}",
                details={"rule": rule.code, **e.details},
            )
    return amounts


def apply_rules(
    repository: Repository,
    base: CalculationResult,
    variables: Mapping[str, Any],
    request: CalculationRequest,
    rules: Optional[List[Rule]] = None,
) -> Tuple[CalculationResult, List[RuleStep]]:
    """
    Applies the applicable rules to a base result.

    Cascading rules modify the running amounts; a non-cascading rule is computed on the base
    amounts and only its difference is added. Iteration stops after a rule that excludes others.
    """
    base_amounts = amounts_of(base)
    if rules is None:
        view = rule_view(variables, request.client_id, base.method_used, base_amounts)
        rules = repository.find_applicable_rules(view, request.date)
    if not rules:
        return base, []

    running = dict(base_amounts)
    applied: List[AppliedRule] = []
    steps: List[RuleStep] = []

    for rule in rules:
        before = running["total"]
        if rule.cascade:
            running = apply_rule(running, rule, variables)
        else:
            modified = apply_rule(base_amounts, rule, variables)
            for field in ("tariff", "toll", "extras"):
                running[field] += modified[field] - base_amounts[field]
            running["total"] = running["tariff"] + running["toll"] + running["extras"]

        delta = round2(running["total"] - before)
        applied.append(AppliedRule(code=rule.code, name=rule.name, delta=delta))
        steps.append(RuleStep(
            code=rule.code, name=rule.name, delta=delta,
            total_before=round2(before), total_after=round2(running["total"]),
        ))
        logger.debug(f"Rule applied: code={rule.code}, delta={delta}")

        if rule.excludes_others:
            logger.debug(f"Rule {rule.code} excludes others; stopping")
            break

    tariff = round2(running["tariff"])
    toll = round2(running["toll"])
    extras = round2(running["extras"])
    result = base.model_copy(update={
        "tariff_base": tariff,
        "toll": toll,
        "extras": extras,
        "total": round2(tariff + toll + extras),
        "applied_rules": applied,
    })
    return result, steps
