"""
Scenario simulation: runs several tariff calculations side by side for comparison.
"""
import time
from typing import Any, Dict, List, Optional, Sequence

from pydantic import Field

from tarifador.core.logger import logger
from tarifador.motor.schemas import CalculationRequest, CalculationResult, EngineModel
from tarifador.motor.service import TariffEngine, describe_error

COMPARED_METHODS = ("PALET", "KILOMETRO", "FIJO")
SINGLE_RUN = "single"


class Scenario(CalculationRequest):
    """A named calculation request."""
    name: str = Field(..., min_length=1)


class ScenarioOutcome(EngineModel):
    name: str
    results: Dict[str, CalculationResult] = Field(default_factory=dict)
    errors: Dict[str, str] = Field(default_factory=dict)
    analysis: Optional[Dict[str, Any]] = None


class ScenarioFailure(EngineModel):
    name: str
    error: str
    client_id: str
    origin_id: str
    destination_id: str


class SimulationReport(EngineModel):
    outcomes: List[ScenarioOutcome] = Field(default_factory=list)
    failures: List[ScenarioFailure] = Field(default_factory=list)
    summary: Dict[str, Any] = Field(default_factory=dict)


def analyse(results: Dict[str, CalculationResult]) -> Dict[str, Any]:
    """Spread of totals across the runs of one scenario."""
    if not results:
        return {}
    totals = {label: r.total for label, r in results.items()}
    lowest = min(totals.values())
    highest = max(totals.values())
    spread = highest - lowest
    return {
        "min_total": lowest,
        "max_total": highest,
        "mean_total": round(sum(totals.values()) / len(totals), 2),
        "spread": round(spread, 2),
        "spread_pct": round(spread / lowest * 100, 2) if lowest else None,
        "cheapest": min(totals, key=totals.get),
    }


def _run(engine: TariffEngine, scenario: Scenario, labels: Sequence[Optional[str]], **flags: Any) -> ScenarioOutcome:
    outcome = ScenarioOutcome(name=scenario.name)
    for method in labels:
        request = scenario.model_copy(update={"method_override": method, "use_cache": False, **flags})
        label = method or SINGLE_RUN
        try:
            outcome.results[label] = engine.calculate(request)
        except Exception as e:
            outcome.errors[label] = describe_error(e)
    return outcome


def simulate(
    engine: TariffEngine,
    scenarios: Sequence[Scenario],
    compare_methods: bool = False,
    apply_rules: bool = True,
    include_breakdown: bool = False,
    include_analysis: bool = False,
) -> SimulationReport:
    """
    Runs every scenario without cache. With compare_methods, a scenario that names no method
    is computed once per compared method. A scenario with no successful run is reported as a failure.
    """
    started = time.perf_counter()
    report = SimulationReport()
    logger.info(f"Simulation started: scenarios={len(scenarios)}, compare_methods={compare_methods}")

    for scenario in scenarios:
        if compare_methods and not scenario.method_override:
            labels: Sequence[Optional[str]] = COMPARED_METHODS
        else:
            labels = (scenario.method_override,)

        outcome = _run(engine, scenario, labels, apply_rules=apply_rules, include_breakdown=include_breakdown)
        if not outcome.results:
            report.failures.append(ScenarioFailure(
                name=scenario.name,
                error="; ".join(outcome.errors.values()),
                client_id=scenario.client_id,
                origin_id=scenario.origin_id,
                destination_id=scenario.destination_id,
            ))
            logger.error(f"Simulation scenario failed: {scenario.name}")
            continue

        if include_analysis:
            outcome.analysis = analyse(outcome.results)
        report.outcomes.append(outcome)

    duration_ms = (time.perf_counter() - started) * 1000
    report.summary = {
        "scenarios": len(scenarios),
        "succeeded": len(report.outcomes),
        "failed": len(report.failures),
        "duration_ms": round(duration_ms, 2),
    }
    logger.info(f"Simulation finished: {report.summary}")
    return report
