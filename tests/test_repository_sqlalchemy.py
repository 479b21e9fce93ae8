"""
Integration tests of the SQLAlchemy catalog against a file-backed SQLite database.
"""
from datetime import date, datetime

import pytest
from sqlalchemy.orm import sessionmaker

from tarifador.catalogo.models import (
    CalculationMethodRecord,
    ClientRecord,
    CustomFormulaRecord,
    HolidayRecord,
    RouteRecord,
    RouteTariffRecord,
    RuleRecord,
    SiteRecord,
    VehicleLimitsRecord,
)
from tarifador.catalogo.repository import SCOPE_CLIENT_KEY, SCOPE_METHOD_KEY, SqlAlchemyRepository
from tarifador.core.database import Base, build_engine, init_db
from tarifador.motor.schemas import CalculationRequest
from tarifador.motor.service import TariffEngine

MOMENT = datetime(2024, 3, 13, 10, 30)


@pytest.fixture
def session_factory(tmp_path):
    db_engine = build_engine(f"sqlite:///{tmp_path / 'catalogo.db'}")
    init_db(db_engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)

    with factory() as db:
        db.add_all([
            ClientRecord(id="cli-1", name="Acme Logistica", type="corporativo", category="A", discount=5),
            SiteRecord(id="orig", name="Deposito Central", latitude=0.0, longitude=0.0),
            SiteRecord(id="dest", name="Planta Norte", latitude=0.0, longitude=1.0),
            RouteRecord(
                id="tr-1", client_id="cli-1", origin_id="orig", destination_id="dest", distance=300,
                tariffs=[
                    RouteTariffRecord(tramo_type="TRMC", method="Palet", rate=1000, toll=200,
                                      valid_from=datetime(2024, 1, 1)),
                    RouteTariffRecord(tramo_type="TRMI", method="Kilometro", rate=2.5, toll=50,
                                      valid_from=datetime(2024, 1, 1)),
                ],
            ),
            CalculationMethodRecord(code="PESO", name="Por peso", base_formula="Valor * Peso / 1000"),
            CalculationMethodRecord(code="VIEJO", name="Retirado", base_formula="Valor", active=False),
            CustomFormulaRecord(id="cf-1", client_id="cli-1", method_code="PALET", formula="Valor * Palets * 0,9",
                                valid_from=datetime(2024, 1, 1), created_at=datetime(2024, 1, 1)),
            CustomFormulaRecord(id="cf-old", client_id="cli-1", method_code="PALET", formula="Valor",
                                valid_from=datetime(2023, 1, 1), valid_to=datetime(2023, 12, 31),
                                priority=500, created_at=datetime(2023, 1, 1)),
            RuleRecord(
                code="VOLUMEN", name="Descuento por volumen", valid_from=datetime(2024, 1, 1), priority=50,
                conditions=[{"field": "Palets", "operator": "greaterEqual", "value": 5}],
                modifiers=[{"type": "fixed", "value": -100, "applyTo": "total"}],
            ),
            RuleRecord(
                code="NOCTURNO", name="Recargo nocturno", valid_from=datetime(2024, 1, 1),
                time_window={"start": "22:00", "end": "23:59"},
                modifiers=[{"type": "percentage", "value": 20, "applyTo": "tariff"}],
            ),
            VehicleLimitsRecord(unit_type="Semi", max_capacity=28, max_weight=30000),
            HolidayRecord(day=date(2024, 5, 1), name="Dia del Trabajador"),
        ])
        db.commit()

    return factory


@pytest.fixture
def repository(session_factory):
    return SqlAlchemyRepository(session_factory)


def test_reference_lookups(repository):
    assert repository.find_client_by_id("cli-1").discount == 5
    assert repository.find_client_by_id("no-existe") is None
    assert repository.find_site_by_id("dest").longitude == 1.0
    assert repository.find_vehicle_limits_by_unit_type("Semi").max_weight == 30000
    assert repository.is_holiday(date(2024, 5, 1)) is True
    assert repository.is_holiday(date(2024, 5, 2)) is False


@pytest.mark.parametrize("unit_type", ["semi", " SEMI ", "Semi"])
def test_vehicle_limits_lookup_ignores_case(repository, unit_type):
    assert repository.find_vehicle_limits_by_unit_type(unit_type).max_weight == 30000


def test_route_with_tariffs(repository):
    route = repository.find_route_by_client_origin_destination("cli-1", "orig", "dest")

    assert route.distance == 300
    assert len(route.tariffs) == 2
    assert route.tariff_for(MOMENT, "TRMI").rate == 2.5
    assert repository.find_route_by_client_origin_destination("cli-1", "dest", "orig") is None


def test_only_active_methods(repository):
    assert repository.find_active_method_by_code("peso").base_formula == "Valor * Peso / 1000"
    assert repository.find_active_method_by_code("VIEJO") is None


def test_custom_formula_window(repository):
    assert repository.find_active_custom_formula("cli-1", "PALET", MOMENT, None).id == "cf-1"
    assert repository.find_active_custom_formula("cli-1", "PALET", datetime(2023, 6, 1), None).id == "cf-old"
    assert repository.find_active_custom_formula("cli-1", "KILOMETRO", MOMENT, None) is None


def test_usage_counter(repository, session_factory):
    repository.record_custom_formula_usage("cf-1")
    repository.record_custom_formula_usage("cf-1")

    with session_factory() as db:
        assert db.get(CustomFormulaRecord, "cf-1").usage_count == 2


def test_rules_from_json_documents(repository):
    view = {"Palets": 5, SCOPE_CLIENT_KEY: "cli-1", SCOPE_METHOD_KEY: "PALET", "total": 5200}

    rules = repository.find_applicable_rules(view, MOMENT)

    assert [r.code for r in rules] == ["VOLUMEN"]
    assert rules[0].modifiers[0].value == -100
    assert [r.code for r in repository.find_applicable_rules(view, datetime(2024, 3, 13, 23, 0))] == [
        "NOCTURNO", "VOLUMEN",
    ]


def test_engine_over_database(repository, session_factory):
    engine = TariffEngine(repository)
    request = CalculationRequest(client_id="cli-1", origin_id="orig", destination_id="dest", date=MOMENT, pallets=5)

    result = engine.calculate(request)

    assert result.formula_used == "Valor * Palets * 0,9"
    assert result.total == 4400
    assert [r.code for r in result.applied_rules] == ["VOLUMEN"]
    with session_factory() as db:
        assert db.get(CustomFormulaRecord, "cf-1").usage_count == 1


def test_schema_creation_is_idempotent(session_factory):
    init_db(session_factory.kw["bind"])

    assert "reglas_tarifa" in Base.metadata.tables
