"""
Catalog access layer consumed by the tariff engine.
Defines the collaborator protocol plus an in-memory and a SQLAlchemy implementation.
"""
import threading
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Set

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from tarifador.catalogo.models import (
    CalculationMethodRecord,
    ClientRecord,
    CustomFormulaRecord,
    HolidayRecord,
    RouteRecord,
    RuleRecord,
    SiteRecord,
    VehicleLimitsRecord,
)
from tarifador.catalogo.schemas import (
    CalculationMethod,
    Client,
    CustomFormula,
    Route,
    Rule,
    Site,
    VehicleLimits,
)
from tarifador.core.database import SessionLocal
from tarifador.core.logger import logger

# Keys of the rule-evaluation view that scope a rule to a client or a method
SCOPE_CLIENT_KEY = "cliente"
SCOPE_METHOD_KEY = "metodoCalculo"


class Repository(Protocol):
    """Read-only catalog lookups; the only write is the custom-formula usage counter."""

    def find_client_by_id(self, client_id: str) -> Optional[Client]: ...

    def find_site_by_id(self, site_id: str) -> Optional[Site]: ...

    def find_route_by_client_origin_destination(
        self, client_id: str, origin_id: str, destination_id: str
    ) -> Optional[Route]: ...

    def find_active_method_by_code(self, code: str) -> Optional[CalculationMethod]: ...

    def find_active_custom_formula(
        self, client_id: str, method_code: str, moment: datetime, unit_type: Optional[str]
    ) -> Optional[CustomFormula]: ...

    def find_applicable_rules(self, view: Mapping[str, Any], moment: datetime) -> List[Rule]: ...

    def find_vehicle_limits_by_unit_type(self, unit_type: str) -> Optional[VehicleLimits]: ...

    def is_holiday(self, day: date) -> bool: ...

    def record_custom_formula_usage(self, formula_id: str) -> None: ...


def pick_custom_formula(
    candidates: Iterable[CustomFormula], moment: datetime, unit_type: Optional[str]
) -> Optional[CustomFormula]:
    """
    Selects the custom formula that applies on the given moment for the given unit type.
    Highest priority wins; ties go to the most recently created formula, then to the greatest id.
    """
    eligible = [f for f in candidates if f.is_valid_on(moment) and f.matches_unit(unit_type)]
    if not eligible:
        return None
    return max(eligible, key=lambda f: (f.priority, f.created_at, f.id))


def select_applicable_rules(rules: Iterable[Rule], view: Mapping[str, Any], moment: datetime) -> List[Rule]:
    """Filters rules by scope, calendar validity and conditions; result is ordered by descending priority."""
    client_id = view.get(SCOPE_CLIENT_KEY)
    method_code = view.get(SCOPE_METHOD_KEY)
    applicable = [
        rule for rule in rules
        if rule.applies_to_scope(client_id, method_code) and rule.is_valid_on(moment) and rule.matches(dict(view))
    ]
    return sorted(applicable, key=lambda r: (-r.priority, r.code))


class InMemoryRepository:
    """Thread-safe catalog held in dictionaries. Used for embedding and tests."""

    def __init__(self):
        self._lock = threading.RLock()
        self.clients: Dict[str, Client] = {}
        self.sites: Dict[str, Site] = {}
        self.routes: Dict[str, Route] = {}
        self.methods: Dict[str, CalculationMethod] = {}
        self.custom_formulas: Dict[str, CustomFormula] = {}
        self.rules: Dict[str, Rule] = {}
        self.vehicle_limits: Dict[str, VehicleLimits] = {}
        self.holidays: Set[date] = set()

    # Seeding -----------------------------------------------------------------

    def add_client(self, client: Client) -> Client:
        with self._lock:
            self.clients[client.id] = client
        return client

    def add_site(self, site: Site) -> Site:
        with self._lock:
            self.sites[site.id] = site
        return site

    def add_route(self, route: Route) -> Route:
        with self._lock:
            self.routes[route.id] = route
        return route

    def add_method(self, method: CalculationMethod) -> CalculationMethod:
        with self._lock:
            self.methods[method.code] = method
        return method

    def add_custom_formula(self, formula: CustomFormula) -> CustomFormula:
        with self._lock:
            self.custom_formulas[formula.id] = formula
        return formula

    def add_rule(self, rule: Rule) -> Rule:
        with self._lock:
            self.rules[rule.code] = rule
        return rule

    def add_vehicle_limits(self, limits: VehicleLimits) -> VehicleLimits:
        with self._lock:
            self.vehicle_limits[limits.unit_type.strip().lower()] = limits
        return limits

    def add_holiday(self, day: date) -> None:
        with self._lock:
            self.holidays.add(day)

    # Lookups -----------------------------------------------------------------

    def find_client_by_id(self, client_id: str) -> Optional[Client]:
        return self.clients.get(client_id)

    def find_site_by_id(self, site_id: str) -> Optional[Site]:
        return self.sites.get(site_id)

    def find_route_by_client_origin_destination(
        self, client_id: str, origin_id: str, destination_id: str
    ) -> Optional[Route]:
        with self._lock:
            routes = list(self.routes.values())
        for route in routes:
            if (route.client_id, route.origin_id, route.destination_id) == (client_id, origin_id, destination_id):
                return route
        return None

    def find_active_method_by_code(self, code: str) -> Optional[CalculationMethod]:
        method = self.methods.get(code.strip().upper())
        return method if method and method.active else None

    def find_active_custom_formula(
        self, client_id: str, method_code: str, moment: datetime, unit_type: Optional[str]
    ) -> Optional[CustomFormula]:
        with self._lock:
            candidates = [
                f for f in self.custom_formulas.values()
                if f.client_id == client_id and f.method_code == method_code.upper()
            ]
        return pick_custom_formula(candidates, moment, unit_type)

    def find_applicable_rules(self, view: Mapping[str, Any], moment: datetime) -> List[Rule]:
        with self._lock:
            rules = list(self.rules.values())
        return select_applicable_rules(rules, view, moment)

    def find_vehicle_limits_by_unit_type(self, unit_type: str) -> Optional[VehicleLimits]:
        return self.vehicle_limits.get(unit_type.strip().lower())

    def is_holiday(self, day: date) -> bool:
        return day in self.holidays

    def record_custom_formula_usage(self, formula_id: str) -> None:
        with self._lock:
            formula = self.custom_formulas.get(formula_id)
            if formula is None:
                logger.warning(f"Usage recorded for unknown custom formula: id={formula_id}")
                return
            self.custom_formulas[formula_id] = formula.model_copy(update={"usage_count": formula.usage_count + 1})


class SqlAlchemyRepository:
    """
    Catalog backed by the ORM models.
    Every lookup opens its own short-lived session so lookups can run on different threads.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    def find_client_by_id(self, client_id: str) -> Optional[Client]:
        with self.session_factory() as db:
            record = db.get(ClientRecord, client_id)
            return Client.model_validate(record) if record else None

    def find_site_by_id(self, site_id: str) -> Optional[Site]:
        with self.session_factory() as db:
            record = db.get(SiteRecord, site_id)
            return Site.model_validate(record) if record else None

    def find_route_by_client_origin_destination(
        self, client_id: str, origin_id: str, destination_id: str
    ) -> Optional[Route]:
        with self.session_factory() as db:
            record = db.scalars(
                select(RouteRecord).where(
                    RouteRecord.client_id == client_id,
                    RouteRecord.origin_id == origin_id,
                    RouteRecord.destination_id == destination_id,
                )
            ).first()
            return Route.model_validate(record) if record else None

    def find_active_method_by_code(self, code: str) -> Optional[CalculationMethod]:
        with self.session_factory() as db:
            record = db.scalars(
                select(CalculationMethodRecord).where(
                    CalculationMethodRecord.code == code.strip().upper(),
                    CalculationMethodRecord.active.is_(True),
                )
            ).first()
            return CalculationMethod.model_validate(record) if record else None

    def find_active_custom_formula(
        self, client_id: str, method_code: str, moment: datetime, unit_type: Optional[str]
    ) -> Optional[CustomFormula]:
        with self.session_factory() as db:
            records = db.scalars(
                select(CustomFormulaRecord).where(
                    CustomFormulaRecord.client_id == client_id,
                    CustomFormulaRecord.method_code == method_code.upper(),
                    CustomFormulaRecord.active.is_(True),
                    CustomFormulaRecord.valid_from <= moment,
                    or_(CustomFormulaRecord.valid_to.is_(None), CustomFormulaRecord.valid_to >= moment),
                )
            ).all()
            candidates = [CustomFormula.model_validate(r) for r in records]
        return pick_custom_formula(candidates, moment, unit_type)

    def find_applicable_rules(self, view: Mapping[str, Any], moment: datetime) -> List[Rule]:
        with self.session_factory() as db:
            records = db.scalars(
                select(RuleRecord).where(RuleRecord.active.is_(True), RuleRecord.valid_from <= moment)
            ).all()
            rules = [Rule.model_validate(r) for r in records]
        return select_applicable_rules(rules, view, moment)

    def find_vehicle_limits_by_unit_type(self, unit_type: str) -> Optional[VehicleLimits]:
        with self.session_factory() as db:
            record = db.scalars(
                select(VehicleLimitsRecord).where(
                    func.lower(VehicleLimitsRecord.unit_type) == unit_type.strip().lower()
                )
            ).first()
            return VehicleLimits.model_validate(record) if record else None

    def is_holiday(self, day: date) -> bool:
        with self.session_factory() as db:
            return db.get(HolidayRecord, day) is not None

    def record_custom_formula_usage(self, formula_id: str) -> None:
        with self.session_factory() as db:
            db.execute(
                update(CustomFormulaRecord)
                .where(CustomFormulaRecord.id == formula_id)
                .values(usage_count=CustomFormulaRecord.usage_count + 1)
            )
            db.commit()
