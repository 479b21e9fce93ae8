"""
Method & formula resolver.
Decides which calculation method applies to a request and which formula text it evaluates.
"""
import unicodedata
from dataclasses import dataclass
from typing import Optional, Tuple, Union

from tarifador.catalogo.repository import Repository
from tarifador.catalogo.schemas import CalculationMethod, CustomFormula, RouteTariff
from tarifador.core.config import Settings, settings as default_settings
from tarifador.core.exceptions import InvalidFormulaDataError
from tarifador.core.logger import logger
from tarifador.motor.context import TariffContext
from tarifador.motor.schemas import CalculationRequest

# Fixed formulas of the historical method names stored on route tariffs
LEGACY_FORMULAS = {
    "KILOMETRO": "Valor * Distancia + Peaje",
    "PALET": "Valor * Palets + Peaje",
    "FIJO": "Valor + Peaje",
}


def legacy_code(name: str) -> str:
    """'Kilómetro' -> 'KILOMETRO'."""
    decomposed = unicodedata.normalize("NFKD", name.strip())
    return "".join(c for c in decomposed if not unicodedata.combining(c)).upper()


@dataclass(frozen=True)
class ConfiguredMethod:
    """A method read from the catalog."""

    method: CalculationMethod

    @property
    def code(self) -> str:
        return self.method.code

    @property
    def base_formula(self) -> str:
        return self.method.base_formula

    @property
    def allows_custom_formulas(self) -> bool:
        return self.method.allows_custom_formulas


@dataclass(frozen=True)
class LegacyMethod:
    """A historical method name with no catalog entry; its formula is fixed."""

    name: str

    @property
    def code(self) -> str:
        return legacy_code(self.name)

    @property
    def base_formula(self) -> str:
        return LEGACY_FORMULAS[self.code]

    @property
    def allows_custom_formulas(self) -> bool:
        return True


ResolvedMethod = Union[ConfiguredMethod, LegacyMethod]


@dataclass(frozen=True)
class Resolution:
    method: ResolvedMethod
    formula: str
    custom_formula: Optional[CustomFormula]
    tariff: Optional[RouteTariff]
    warnings: Tuple[str, ...] = ()


def route_tariff(context: TariffContext, request: CalculationRequest) -> Optional[RouteTariff]:
    if context.route is None:
        return None
    return context.route.tariff_for(request.date, request.tramo_type)


def _method_from_tariff(repository: Repository, tariff: RouteTariff) -> ResolvedMethod:
    if not tariff.method or not tariff.method.strip():
        raise InvalidFormulaDataError(
            "Route tariff has no calculation method", details={"valid_from": str(tariff.valid_from)}
        )
    code = legacy_code(tariff.method)
    configured = repository.find_active_method_by_code(code)
    if configured:
        return ConfiguredMethod(configured)
    if code not in LEGACY_FORMULAS:
        raise InvalidFormulaDataError(
            f"Unknown calculation method on route tariff: {tariff.method}", details={"method": tariff.method}
        )
    return LegacyMethod(tariff.method)


def resolve_method(
    repository: Repository,
    request: CalculationRequest,
    tariff: Optional[RouteTariff],
    settings: Settings = default_settings,
) -> Tuple[ResolvedMethod, Tuple[str, ...]]:
    """
    Method resolution order:
    1. the explicit method code of the request, when it names an active method;
    2. the method of the route tariff valid on the date for the tramo type;
    3. the configured default method, or its legacy synthesis.
    """
    warnings = []
    if request.method_override:
        configured = repository.find_active_method_by_code(request.method_override)
        if configured:
            return ConfiguredMethod(configured), ()
        warnings.append(f"Method {request.method_override} not found or inactive; resolving automatically")
        logger.warning(f"Explicit method not available: {request.method_override}")

    if tariff is not None:
        return _method_from_tariff(repository, tariff), tuple(warnings)

    default = repository.find_active_method_by_code(settings.DEFAULT_METHOD_CODE)
    if default:
        return ConfiguredMethod(default), tuple(warnings)
    return LegacyMethod("Palet"), tuple(warnings)


def resolve_formula(
    repository: Repository, request: CalculationRequest, method: ResolvedMethod
) -> Tuple[str, Optional[CustomFormula]]:
    """The client's custom formula when the method allows overrides and one applies, else the base formula."""
    if method.allows_custom_formulas:
        custom = repository.find_active_custom_formula(request.client_id, method.code, request.date, request.unit_type)
        if custom is not None:
            return custom.formula, custom
    return method.base_formula, None


def resolve(
    repository: Repository,
    request: CalculationRequest,
    context: TariffContext,
    settings: Settings = default_settings,
) -> Resolution:
    """Read-only resolution; usage of a custom formula is recorded separately with record_usage()."""
    tariff = route_tariff(context, request)
    method, warnings = resolve_method(repository, request, tariff, settings)
    formula, custom = resolve_formula(repository, request, method)
    logger.debug(
        f"Resolved method={method.code} ({type(method).__name__}), "
        f"custom_formula={custom.id if custom else None}"
    )
    return Resolution(method=method, formula=formula, custom_formula=custom, tariff=tariff, warnings=warnings)


def record_usage(repository: Repository, formula_id: str) -> None:
    """Increments a custom formula's usage counter; a failure is logged and ignored."""
    try:
        repository.record_custom_formula_usage(formula_id)
    except Exception as e:
        logger.warning(f"Could not record custom formula usage: id={formula_id}, error={e}")
