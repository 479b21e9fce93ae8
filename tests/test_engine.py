"""
End-to-end tests of the tariff engine over the in-memory catalog.
"""
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from tarifador.catalogo.schemas import CalculationMethod, CustomFormula, Route, RouteTariff, Rule
from tarifador.core.exceptions import (
    NoApplicableRouteError,
    ReferenceNotFoundError,
    ValidationError,
)
from tarifador.motor.calculator import WARNING_NO_RATE, WARNING_ZERO_TOTAL
from tarifador.motor.schemas import CalculationRequest
from tarifador.motor.service import TariffEngine


def test_pallet_calculation(engine, make_request):
    """5 pallets at 1000 plus a 200 toll."""
    result = engine.calculate(make_request())

    assert result.tariff_base == 5000
    assert result.toll == 200
    assert result.extras == 0
    assert result.total == 5200
    assert result.method_used == "PALET"
    assert result.formula_used == "Valor * Palets + Peaje"
    assert result.applied_rules == []
    assert result.warnings == []
    assert result.cache_hit is False


def test_kilometre_tariff_for_trmi(engine, make_request):
    result = engine.calculate(make_request(tramo_type="TRMI"))

    assert result.method_used == "KILOMETRO"
    assert result.tariff_base == 750
    assert result.toll == 50
    assert result.total == 800


def test_historical_tariff_used_for_past_date(engine, make_request):
    result = engine.calculate(make_request(date=datetime(2023, 6, 1)))

    assert result.total == 4650


def test_toll_zero_when_formula_ignores_it(engine, repository, make_request):
    repository.add_method(CalculationMethod(code="PALET", name="Por palet", base_formula="Valor * Palets"))

    result = engine.calculate(make_request())

    assert result.toll == 0
    assert result.total == 5000


def test_extras_added_to_total(engine, make_request):
    result = engine.calculate(make_request(extras=[{"name": "Carga", "amount": 100, "quantity": 2}]))

    assert result.extras == 200
    assert result.total == 5400
    assert result.total == result.tariff_base + result.toll + result.extras


def test_cache_hit_on_second_call(engine, make_request):
    first = engine.calculate(make_request(use_cache=True))
    second = engine.calculate(make_request(use_cache=True))

    assert first.cache_hit is False
    assert second.cache_hit is True
    assert second.total == first.total
    assert engine.cache_stats()["hits"] == 1


def test_cache_not_used_unless_requested(engine, make_request):
    engine.calculate(make_request())
    engine.calculate(make_request())

    assert engine.cache_stats()["size"] == 0


def test_clear_cache(engine, make_request):
    engine.calculate(make_request(use_cache=True))

    engine.clear_cache()

    assert engine.calculate(make_request(use_cache=True)).cache_hit is False


def test_every_attempt_audited(engine, make_request):
    engine.calculate(make_request())
    with pytest.raises(ReferenceNotFoundError):
        engine.calculate(make_request(client_id="no-existe"))

    failed = engine.audit_records(with_errors=True)
    assert len(engine.audit_records()) == 2
    assert len(failed) == 1
    assert failed[0].errors[0].startswith("TAR-404")
    assert failed[0].result is None


def test_no_route_without_rate(engine, make_request):
    with pytest.raises(NoApplicableRouteError) as exc_info:
        engine.calculate(make_request(client_id="cli-2"))

    assert exc_info.value.code == "TAR-410"


def test_rate_supplied_by_request_variables(engine, make_request):
    result = engine.calculate(make_request(client_id="cli-2", variables={"Valor": 100}))

    assert result.method_used == "PALET"
    assert result.total == 500


def test_zero_rate_warnings(engine, make_request):
    result = engine.calculate(make_request(client_id="cli-2", variables={"Valor": 0}))

    assert result.total == 0
    assert WARNING_ZERO_TOTAL in result.warnings
    assert WARNING_NO_RATE in result.warnings


def test_negative_tariff_rejected(engine, repository, make_request):
    repository.add_route(Route(
        id="tr-neg", client_id="cli-2", origin_id="orig", destination_id="dest",
        tariffs=[RouteTariff(method="Palet", rate=-10, valid_from=datetime(2024, 1, 1))],
    ))

    with pytest.raises(ValidationError) as exc_info:
        engine.calculate(make_request(client_id="cli-2"))

    assert exc_info.value.code == "TAR-400"


def test_custom_formula_usage_recorded(engine, repository, make_request):
    repository.add_custom_formula(CustomFormula(
        id="cf-1", client_id="cli-1", method_code="PALET", formula="Valor * 2", valid_from=datetime(2024, 1, 1),
    ))

    result = engine.calculate(make_request(use_cache=True))
    engine.calculate(make_request(use_cache=True))

    assert result.formula_used == "Valor * 2"
    assert result.total == 2000
    assert repository.custom_formulas["cf-1"].usage_count == 1


def test_breakdown(engine, make_request):
    result = engine.calculate(make_request(include_breakdown=True, extras=[{"name": "Espera", "amount": 50}]))

    breakdown = result.breakdown
    assert breakdown.formula == "Valor * Palets + Peaje"
    assert breakdown.variables == {"Palets": 5, "Peaje": 200, "Valor": 1000}
    assert breakdown.extras_detail[0].name == "Espera"
    assert breakdown.total == 5250


def test_rules_applied_by_engine(engine, repository, make_request):
    repository.add_rule(Rule(
        code="URGENTE", name="Recargo urgencia", valid_from=datetime(2024, 1, 1),
        conditions=[{"field": "Urgencia", "operator": "equal", "value": "Alta"}],
        modifiers=[{"type": "percentage", "value": 10, "applyTo": "total"}],
    ))

    plain = engine.calculate(make_request())
    urgent = engine.calculate(make_request(urgency="Alta", include_breakdown=True))

    assert plain.total == 5200
    assert urgent.total == 5720
    assert urgent.applied_rules[0].code == "URGENTE"
    assert urgent.applied_rules[0].delta == 520
    assert urgent.breakdown.rules[0].total_before == 5200


def test_rules_skipped_when_disabled(engine, repository, make_request):
    repository.add_rule(Rule(
        code="SIEMPRE", name="Siempre", valid_from=datetime(2024, 1, 1),
        modifiers=[{"type": "fixed", "value": 100, "applyTo": "total"}],
    ))

    assert engine.calculate(make_request(apply_rules=False)).total == 5200
    assert engine.calculate(make_request()).total == 5300


def test_cache_failures_do_not_reach_caller(repository, make_request):
    cache = MagicMock()
    cache.get.side_effect = RuntimeError("cache down")
    cache.put.side_effect = RuntimeError("cache down")
    engine = TariffEngine(repository, cache=cache)

    assert engine.calculate(make_request(use_cache=True)).total == 5200


def test_audit_failures_do_not_reach_caller(repository, make_request):
    audit = MagicMock()
    audit.record.side_effect = RuntimeError("audit down")
    engine = TariffEngine(repository, audit=audit)

    assert engine.calculate(make_request()).total == 5200
    audit.record.assert_called_once()


def test_camel_case_request(engine, repository):
    repository.add_method(CalculationMethod(code="FIJO", name="Fijo", base_formula="Valor + Peaje"))
    request = CalculationRequest.model_validate({
        "clientId": "cli-1",
        "originId": "orig",
        "destinationId": "dest",
        "date": "2024-03-13T10:30:00",
        "pallets": 5,
        "methodOverride": " fijo ",
    })

    result = engine.calculate(request)

    assert request.method_override == "FIJO"
    assert result.method_used == "FIJO"
    assert result.total == 1200


def test_aware_date_normalized_to_utc(engine, make_request):
    request = CalculationRequest.model_validate({
        "clientId": "cli-1", "originId": "orig", "destinationId": "dest",
        "date": "2024-01-01T01:00:00+03:00", "pallets": 5,
    })

    assert request.date == datetime(2023, 12, 31, 22, 0)
    assert engine.calculate(request).total == 4650


def test_concurrent_calculations(engine, make_request):
    requests = [make_request(pallets=n, use_cache=True) for n in range(1, 21)]

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(engine.calculate, requests))

    assert [r.total for r in results] == [1000 * n + 200 for n in range(1, 21)]
    assert len(engine.audit_records()) == 20


def test_cache_distinguishes_request_variables(engine, make_request):
    first = engine.calculate(make_request(client_id="cli-2", use_cache=True, variables={"Valor": 10}))
    second = engine.calculate(make_request(client_id="cli-2", use_cache=True, variables={"Valor": 99999}))

    assert first.total == 50
    assert second.total == 499995
    assert second.cache_hit is False


def test_cache_distinguishes_extras(engine, make_request):
    plain = engine.calculate(make_request(use_cache=True))
    with_extras = engine.calculate(make_request(use_cache=True, extras=[{"name": "Carga", "amount": 100}]))

    assert plain.total == 5200
    assert with_extras.total == 5300
    assert with_extras.cache_hit is False


def test_cache_distinguishes_rule_flag(engine, repository, make_request):
    repository.add_rule(Rule(
        code="RECARGO", name="Recargo", valid_from=datetime(2024, 1, 1),
        modifiers=[{"type": "percentage", "value": 10, "applyTo": "total"}],
    ))

    without_rules = engine.calculate(make_request(use_cache=True, apply_rules=False))
    with_rules = engine.calculate(make_request(use_cache=True, apply_rules=True))

    assert without_rules.total == 5200
    assert with_rules.total == 5720
    assert [r.code for r in with_rules.applied_rules] == ["RECARGO"]


def test_cache_distinguishes_breakdown_flag(engine, make_request):
    engine.calculate(make_request(use_cache=True))

    detailed = engine.calculate(make_request(use_cache=True, include_breakdown=True))

    assert detailed.cache_hit is False
    assert detailed.breakdown is not None


def test_caller_changes_do_not_reach_cache(engine, make_request):
    first = engine.calculate(make_request(use_cache=True, include_breakdown=True))
    first.warnings.append("edited by caller")
    first.breakdown.variables["Valor"] = 0

    second = engine.calculate(make_request(use_cache=True, include_breakdown=True))

    assert second.cache_hit is True
    assert second.warnings == []
    assert second.breakdown.variables["Valor"] == 1000
