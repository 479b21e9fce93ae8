"""
Shared fixtures: a seeded in-memory catalog and a request factory.
"""
from datetime import datetime

import pytest

from tarifador.catalogo.repository import InMemoryRepository
from tarifador.catalogo.schemas import Client, Route, RouteTariff, Site, VehicleLimits
from tarifador.motor.schemas import CalculationRequest
from tarifador.motor.service import TariffEngine

# Wednesday
CALCULATION_DATE = datetime(2024, 3, 13, 10, 30)


@pytest.fixture
def repository():
    repo = InMemoryRepository()
    repo.add_client(Client(id="cli-1", name="Acme Logistica", type="corporativo", category="A", discount=5))
    repo.add_client(Client(id="cli-2", name="Frigorifico Sur", type="pyme", category="B"))
    repo.add_site(Site(id="orig", name="Deposito Central", latitude=0.0, longitude=0.0))
    repo.add_site(Site(id="dest", name="Planta Norte", latitude=0.0, longitude=1.0))
    repo.add_site(Site(id="sin-coords", name="Cliente Rural"))
    repo.add_route(Route(
        id="tr-1",
        client_id="cli-1",
        origin_id="orig",
        destination_id="dest",
        distance=300,
        tariffs=[
            RouteTariff(tramo_type="TRMC", method="Palet", rate=900, toll=150, valid_from=datetime(2023, 1, 1),
                        valid_to=datetime(2023, 12, 31, 23, 59)),
            RouteTariff(tramo_type="TRMC", method="Palet", rate=1000, toll=200, valid_from=datetime(2024, 1, 1)),
            RouteTariff(tramo_type="TRMI", method="Kilometro", rate=2.5, toll=50, valid_from=datetime(2024, 1, 1)),
        ],
    ))
    repo.add_vehicle_limits(VehicleLimits(unit_type="Semi", max_capacity=28, max_weight=30000))
    return repo


@pytest.fixture
def engine(repository):
    return TariffEngine(repository)


@pytest.fixture
def make_request():
    def factory(**overrides):
        data = {
            "client_id": "cli-1",
            "origin_id": "orig",
            "destination_id": "dest",
            "date": CALCULATION_DATE,
            "pallets": 5,
        }
        data.update(overrides)
        return CalculationRequest(**data)

    return factory
