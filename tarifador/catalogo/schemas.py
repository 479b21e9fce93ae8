"""
Pydantic schemas for the catalog records the engine reads: clients, sites, routes,
calculation methods, custom formulas, pricing rules and vehicle limits.
"""
import enum
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from tarifador.core.utils import as_naive_utc, js_weekday, utc_now

ANY_UNIT = "any"


class CatalogModel(BaseModel):
    """Base record: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# Aware datetimes are stored as naive UTC
NaiveDatetime = Annotated[datetime, AfterValidator(as_naive_utc)]


def window_contains(valid_from: datetime, valid_to: Optional[datetime], moment: datetime) -> bool:
    """Inclusive validity window check; an open end never expires."""
    if valid_from > moment:
        return False
    return valid_to is None or moment <= valid_to


class Client(CatalogModel):
    id: str
    name: str
    type: str = ""
    category: str = ""
    discount: float = Field(default=0.0, ge=0)


class Site(CatalogModel):
    id: str
    name: str
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class TramoType(str, enum.Enum):
    """Tramo pricing regime."""
    TRMC = "TRMC"
    TRMI = "TRMI"


class RouteTariff(CatalogModel):
    """A dated tariff of a route. The method is the historical calculation-method name."""
    tramo_type: TramoType = TramoType.TRMC
    method: Optional[str] = None
    rate: Optional[float] = None
    toll: float = 0.0
    valid_from: NaiveDatetime
    valid_to: Optional[NaiveDatetime] = None

    def is_valid_on(self, moment: datetime) -> bool:
        return window_contains(self.valid_from, self.valid_to, moment)


class Route(CatalogModel):
    """A priced tramo between an origin and a destination for one client."""
    id: str
    client_id: str
    origin_id: str
    destination_id: str
    distance: float = Field(default=0.0, ge=0)
    tariffs: List[RouteTariff] = Field(default_factory=list)

    def tariff_for(self, moment: datetime, tramo_type: Union[TramoType, str]) -> Optional[RouteTariff]:
        """Latest-starting tariff of the given tramo type whose window contains the moment."""
        tramo = TramoType(tramo_type)
        candidates = [t for t in self.tariffs if t.tramo_type == tramo and t.is_valid_on(moment)]
        if not candidates:
            return None
        return max(candidates, key=lambda t: t.valid_from)


class CalculationMethod(CatalogModel):
    code: str = Field(..., min_length=1, max_length=50)
    name: str
    description: str = ""
    base_formula: str = "Valor * Cantidad + Peaje"
    requires_distance: bool = False
    requires_pallets: bool = False
    allows_custom_formulas: bool = True
    priority: int = Field(default=100, ge=1)
    active: bool = True

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()


class CustomFormula(CatalogModel):
    """Client-specific override of a method's base formula."""
    id: str
    client_id: str
    method_code: str
    formula: str = Field(..., min_length=1)
    valid_from: NaiveDatetime
    valid_to: Optional[NaiveDatetime] = None
    unit_type: str = ANY_UNIT
    priority: int = 100
    active: bool = True
    usage_count: int = Field(default=0, ge=0)
    created_at: NaiveDatetime = Field(default_factory=utc_now)

    @field_validator("method_code")
    @classmethod
    def normalize_method_code(cls, v: str) -> str:
        return v.strip().upper()

    def is_valid_on(self, moment: datetime) -> bool:
        return self.active and window_contains(self.valid_from, self.valid_to, moment)

    def matches_unit(self, unit_type: Optional[str]) -> bool:
        scope = (self.unit_type or ANY_UNIT).strip().lower()
        return scope == ANY_UNIT or (unit_type is not None and scope == unit_type.strip().lower())


class VehicleLimits(CatalogModel):
    unit_type: str
    max_capacity: float = Field(default=0.0, ge=0)
    max_weight: float = Field(default=0.0, ge=0)


# ---------------------------------------------------------------------------
# Pricing rules
# ---------------------------------------------------------------------------

class ConditionOperator(str, enum.Enum):
    EQUAL = "equal"
    DIFFERENT = "different"
    GREATER = "greater"
    LESS = "less"
    GREATER_EQUAL = "greaterEqual"
    LESS_EQUAL = "lessEqual"
    BETWEEN = "between"
    IN = "in"
    CONTAINS = "contains"


class ModifierType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    FORMULA = "formula"


class ModifierTarget(str, enum.Enum):
    TARIFF = "tariff"
    TOLL = "toll"
    EXTRAS = "extras"
    TOTAL = "total"


class RuleCondition(CatalogModel):
    field: str = Field(..., min_length=1)
    operator: ConditionOperator
    value: Any = None
    value_to: Any = None

    def holds(self, view: Dict[str, Any]) -> bool:
        current = view.get(self.field)
        try:
            if self.operator == ConditionOperator.EQUAL:
                return current == self.value
            if self.operator == ConditionOperator.DIFFERENT:
                return current != self.value
            if self.operator == ConditionOperator.GREATER:
                return current > self.value
            if self.operator == ConditionOperator.LESS:
                return current < self.value
            if self.operator == ConditionOperator.GREATER_EQUAL:
                return current >= self.value
            if self.operator == ConditionOperator.LESS_EQUAL:
                return current <= self.value
            if self.operator == ConditionOperator.BETWEEN:
                return self.value <= current <= self.value_to
            if self.operator == ConditionOperator.IN:
                return isinstance(self.value, (list, tuple, set)) and current in self.value
            if self.operator == ConditionOperator.CONTAINS:
                return str(self.value) in str(current)
        except TypeError:
            # Incomparable types (e.g. a missing field against a number) never match
            return False
        return False


class RuleModifier(CatalogModel):
    type: ModifierType
    value: Union[float, str]
    apply_to: ModifierTarget
    description: Optional[str] = None


class TimeWindow(CatalogModel):
    start: str = Field(..., pattern=r"^\d{2}:\d{2}$")
    end: str = Field(..., pattern=r"^\d{2}:\d{2}$")


class Season(CatalogModel):
    name: str = ""
    start: str = Field(..., pattern=r"^\d{2}-\d{2}$")
    end: str = Field(..., pattern=r"^\d{2}-\d{2}$")


class Rule(CatalogModel):
    """Conditional surcharge/discount applied on top of a base tariff."""
    code: str = Field(..., min_length=1)
    name: str
    description: str = ""
    client_id: Optional[str] = None
    method_code: Optional[str] = None
    conditions: List[RuleCondition] = Field(default_factory=list)
    logical_operator: Literal["AND", "OR"] = "AND"
    modifiers: List[RuleModifier] = Field(default_factory=list)
    priority: int = Field(default=100, ge=1)
    active: bool = True
    valid_from: NaiveDatetime
    valid_to: Optional[NaiveDatetime] = None
    cascade: bool = True
    excludes_others: bool = False
    weekdays: List[int] = Field(default_factory=list)
    time_window: Optional[TimeWindow] = None
    seasons: List[Season] = Field(default_factory=list)

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("weekdays")
    @classmethod
    def validate_weekdays(cls, v: List[int]) -> List[int]:
        if any(day < 0 or day > 6 for day in v):
            raise ValueError("Weekdays must be between 0 (Sunday) and 6 (Saturday)")
        return v

    def is_valid_on(self, moment: datetime) -> bool:
        """Validity window plus the optional weekday, time-of-day and season filters."""
        if not self.active or not window_contains(self.valid_from, self.valid_to, moment):
            return False

        if self.weekdays and js_weekday(moment) not in self.weekdays:
            return False

        if self.time_window:
            hour = moment.strftime("%H:%M")
            if hour < self.time_window.start or hour > self.time_window.end:
                return False

        if self.seasons:
            month_day = moment.strftime("%m-%d")
            if not any(s.start <= month_day <= s.end for s in self.seasons):
                return False

        return True

    def applies_to_scope(self, client_id: Optional[str], method_code: Optional[str]) -> bool:
        if self.client_id and self.client_id != client_id:
            return False
        if self.method_code and method_code and self.method_code.upper() != method_code.upper():
            return False
        return True

    def matches(self, view: Dict[str, Any]) -> bool:
        """Evaluates the conditions against the calculation view; no conditions always matches."""
        if not self.conditions:
            return True
        results = [condition.holds(view) for condition in self.conditions]
        return all(results) if self.logical_operator == "AND" else any(results)
