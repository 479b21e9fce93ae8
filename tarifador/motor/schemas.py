"""
Pydantic schemas for the calculation request and result.
Field names are camelCase on the wire for interoperability with the back-office collaborators.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from tarifador.catalogo.schemas import NaiveDatetime, TramoType
from tarifador.core.utils import utc_now


class EngineModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class VehicleRequest(EngineModel):
    """A vehicle type taking part in the trip and how many of them."""
    type: str
    count: int = Field(default=1, ge=0)


class ExtraCharge(EngineModel):
    """Additional charge billed on top of the tariff (loading, waiting time, ...)."""
    name: str
    amount: float = Field(..., description="Unit amount")
    quantity: float = Field(default=1, ge=0)

    @property
    def subtotal(self) -> float:
        return self.amount * self.quantity


class CalculationRequest(EngineModel):
    """Input of a tariff calculation."""
    client_id: str = Field(..., min_length=1)
    origin_id: str = Field(..., min_length=1)
    destination_id: str = Field(..., min_length=1)
    date: NaiveDatetime = Field(default_factory=utc_now, description="Calculation date (naive UTC)")
    tramo_type: TramoType = TramoType.TRMC
    unit_type: Optional[str] = None
    method_override: Optional[str] = Field(default=None, description="Explicit calculation method code")

    pallets: Optional[float] = Field(default=None, ge=0)
    weight: Optional[float] = Field(default=None, ge=0)
    volume: Optional[float] = Field(default=None, ge=0)
    piece_count: Optional[int] = Field(default=None, ge=0)
    vehicles: List[VehicleRequest] = Field(default_factory=list)
    urgency: Optional[str] = None
    cargo_type: Optional[str] = None
    extras: List[ExtraCharge] = Field(default_factory=list)
    variables: Dict[str, Any] = Field(default_factory=dict, description="Formula variables merged last")

    apply_rules: bool = True
    use_cache: bool = False
    include_breakdown: bool = False

    @field_validator("method_override")
    @classmethod
    def normalize_method(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.strip().upper()


class AppliedRule(EngineModel):
    code: str
    name: str
    delta: float = Field(..., description="Net change to the total, rounded to 2 decimals")


class RuleStep(EngineModel):
    code: str
    name: str
    delta: float
    total_before: float
    total_after: float


class Breakdown(EngineModel):
    """Explains how a result was produced."""
    formula: str
    variables: Dict[str, Any] = Field(default_factory=dict)
    tariff_base: float
    toll: float
    extras: float
    extras_detail: List[ExtraCharge] = Field(default_factory=list)
    rules: List[RuleStep] = Field(default_factory=list)
    total: float


class CalculationResult(EngineModel):
    """Output of a tariff calculation. total == tariff_base + toll + extras."""
    tariff_base: float
    toll: float
    extras: float = 0.0
    total: float
    method_used: str
    formula_used: str
    applied_rules: List[AppliedRule] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    breakdown: Optional[Breakdown] = None
    cache_hit: bool = False
