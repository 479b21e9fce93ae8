"""
ORM models for the tariff catalog.
Column names keep the historical Spanish naming of the logistics back office.
"""
from datetime import date, datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import JSON, Boolean, Date, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tarifador.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ClientRecord(Base):
    __tablename__ = "clientes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column("nombre", String(200), nullable=False)
    type: Mapped[str] = mapped_column("tipo", String(50), nullable=False, default="")
    category: Mapped[str] = mapped_column("categoria", String(50), nullable=False, default="")
    discount: Mapped[float] = mapped_column("descuento", Float, nullable=False, default=0.0)

    def __repr__(self):
        return f"<ClientRecord(id={self.id}, name={self.name})>"


class SiteRecord(Base):
    __tablename__ = "sites"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column("nombre", String(200), nullable=False)
    latitude: Mapped[Optional[float]] = mapped_column("latitud", Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column("longitud", Float, nullable=True)


class RouteRecord(Base):
    """Tramo: priced route between two sites for one client."""

    __tablename__ = "tramos"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    client_id: Mapped[str] = mapped_column("cliente_id", String(36), nullable=False, index=True)
    origin_id: Mapped[str] = mapped_column("origen_id", String(36), nullable=False, index=True)
    destination_id: Mapped[str] = mapped_column("destino_id", String(36), nullable=False, index=True)
    distance: Mapped[float] = mapped_column("distancia", Float, nullable=False, default=0.0)

    tariffs: Mapped[List["RouteTariffRecord"]] = relationship(
        back_populates="route", cascade="all, delete-orphan", lazy="selectin"
    )

    def __repr__(self):
        return f"<RouteRecord(id={self.id}, origin={self.origin_id}, destination={self.destination_id})>"


class RouteTariffRecord(Base):
    """Historical tariff of a tramo (tarifa histórica)."""

    __tablename__ = "tarifas_tramo"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    route_id: Mapped[str] = mapped_column("tramo_id", ForeignKey("tramos.id"), nullable=False, index=True)
    tramo_type: Mapped[str] = mapped_column("tipo", String(10), nullable=False, default="TRMC")
    method: Mapped[Optional[str]] = mapped_column("metodo_calculo", String(50), nullable=True)
    rate: Mapped[Optional[float]] = mapped_column("valor", Float, nullable=True)
    toll: Mapped[float] = mapped_column("valor_peaje", Float, nullable=False, default=0.0)
    valid_from: Mapped[datetime] = mapped_column("vigencia_desde", DateTime, nullable=False)
    valid_to: Mapped[Optional[datetime]] = mapped_column("vigencia_hasta", DateTime, nullable=True)

    route: Mapped[RouteRecord] = relationship(back_populates="tariffs")


class CalculationMethodRecord(Base):
    __tablename__ = "tarifa_metodos"

    code: Mapped[str] = mapped_column("codigo", String(50), primary_key=True)
    name: Mapped[str] = mapped_column("nombre", String(200), nullable=False)
    description: Mapped[str] = mapped_column("descripcion", Text, nullable=False, default="")
    base_formula: Mapped[str] = mapped_column("formula_base", Text, nullable=False)
    requires_distance: Mapped[bool] = mapped_column("requiere_distancia", Boolean, default=False)
    requires_pallets: Mapped[bool] = mapped_column("requiere_palets", Boolean, default=False)
    allows_custom_formulas: Mapped[bool] = mapped_column("permite_formulas_personalizadas", Boolean, default=True)
    priority: Mapped[int] = mapped_column("prioridad", Integer, default=100)
    active: Mapped[bool] = mapped_column("activo", Boolean, default=True, index=True)


class CustomFormulaRecord(Base):
    __tablename__ = "formulas_cliente"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    client_id: Mapped[str] = mapped_column("cliente_id", String(36), nullable=False, index=True)
    method_code: Mapped[str] = mapped_column("metodo_calculo", String(50), nullable=False, index=True)
    formula: Mapped[str] = mapped_column(Text, nullable=False)
    valid_from: Mapped[datetime] = mapped_column("vigencia_desde", DateTime, nullable=False)
    valid_to: Mapped[Optional[datetime]] = mapped_column("vigencia_hasta", DateTime, nullable=True)
    unit_type: Mapped[str] = mapped_column("tipo_unidad", String(50), nullable=False, default="any")
    priority: Mapped[int] = mapped_column("prioridad", Integer, default=100)
    active: Mapped[bool] = mapped_column("activa", Boolean, default=True)
    usage_count: Mapped[int] = mapped_column("veces_utilizada", Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column("creado_en", DateTime, default=_utcnow)


class RuleRecord(Base):
    """Pricing rule. Conditions, modifiers and calendar filters are stored as JSON documents."""

    __tablename__ = "reglas_tarifa"

    code: Mapped[str] = mapped_column("codigo", String(50), primary_key=True)
    name: Mapped[str] = mapped_column("nombre", String(200), nullable=False)
    description: Mapped[str] = mapped_column("descripcion", Text, nullable=False, default="")
    client_id: Mapped[Optional[str]] = mapped_column("cliente_id", String(36), nullable=True, index=True)
    method_code: Mapped[Optional[str]] = mapped_column("metodo_calculo", String(50), nullable=True)
    conditions: Mapped[Any] = mapped_column("condiciones", JSON, nullable=False, default=list)
    logical_operator: Mapped[str] = mapped_column("operador_logico", String(3), nullable=False, default="AND")
    modifiers: Mapped[Any] = mapped_column("modificadores", JSON, nullable=False, default=list)
    priority: Mapped[int] = mapped_column("prioridad", Integer, default=100, index=True)
    active: Mapped[bool] = mapped_column("activa", Boolean, default=True, index=True)
    valid_from: Mapped[datetime] = mapped_column("fecha_inicio_vigencia", DateTime, nullable=False)
    valid_to: Mapped[Optional[datetime]] = mapped_column("fecha_fin_vigencia", DateTime, nullable=True)
    cascade: Mapped[bool] = mapped_column("aplicar_en_cascada", Boolean, default=True)
    excludes_others: Mapped[bool] = mapped_column("excluir_otras_reglas", Boolean, default=False)
    weekdays: Mapped[Any] = mapped_column("dias_semana", JSON, nullable=False, default=list)
    time_window: Mapped[Any] = mapped_column("horario_aplicacion", JSON, nullable=True)
    seasons: Mapped[Any] = mapped_column("temporadas", JSON, nullable=False, default=list)


class VehicleLimitsRecord(Base):
    __tablename__ = "vehiculo_limites"

    unit_type: Mapped[str] = mapped_column("tipo_unidad", String(50), primary_key=True)
    max_capacity: Mapped[float] = mapped_column("capacidad_maxima", Float, nullable=False, default=0.0)
    max_weight: Mapped[float] = mapped_column("peso_maximo", Float, nullable=False, default=0.0)


class HolidayRecord(Base):
    __tablename__ = "feriados"

    day: Mapped[date] = mapped_column("fecha", Date, primary_key=True)
    name: Mapped[str] = mapped_column("nombre", String(200), nullable=False, default="")
