"""
Tariff context builder.
Loads the catalog records a calculation needs and derives the formula variables from them.
"""
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from tarifador.catalogo.repository import Repository
from tarifador.catalogo.schemas import Client, Route, Site
from tarifador.core.config import Settings, settings as default_settings
from tarifador.core.exceptions import ReferenceNotFoundError
from tarifador.core.logger import logger
from tarifador.core.utils import haversine_km, js_weekday, round2
from tarifador.motor.schemas import CalculationRequest


@dataclass(frozen=True)
class TariffContext:
    """Immutable inputs of one calculation: formula variables plus the records they came from."""

    variables: Mapping[str, Any]
    client: Client
    origin: Site
    destination: Site
    route: Optional[Route]


def air_distance(origin: Site, destination: Site) -> float:
    """Great-circle distance between two sites, 0 when either lacks coordinates."""
    if not (origin.has_coordinates and destination.has_coordinates):
        return 0.0
    return round2(haversine_km(origin.latitude, origin.longitude, destination.latitude, destination.longitude))


def derive_variables(
    request: CalculationRequest,
    client: Client,
    origin: Site,
    destination: Site,
    route: Optional[Route],
    vehicle_limits: Any = None,
    holiday: bool = False,
) -> Dict[str, Any]:
    """Formula variables for a request. Valor and Peaje are only present when the request sets them."""
    moment = request.date
    weekday = js_weekday(moment)
    real_distance = route.distance if route else 0.0
    pallets = request.pallets or 0

    variables: Dict[str, Any] = {
        "Cantidad": pallets,
        "Palets": pallets,
        "Distancia": real_distance,
        "DistanciaReal": real_distance,
        "DistanciaAerea": air_distance(origin, destination),
        "Fecha": moment,
        "DiaSemana": weekday,
        "Dia": moment.day,
        "Mes": moment.month,
        "Trimestre": (moment.month - 1) // 3 + 1,
        "EsFinDeSemana": weekday in (0, 6),
        "EsFeriado": holiday,
        "Hora": moment.hour,
        "TipoTramo": request.tramo_type.value,
        "TipoUnidad": request.unit_type or "",
        "CapacidadMaxima": vehicle_limits.max_capacity if vehicle_limits else 0,
        "PesoMaximo": vehicle_limits.max_weight if vehicle_limits else 0,
        "CantidadVehiculos": sum(v.count for v in request.vehicles),
        "TipoCliente": client.type,
        "CategoriaCliente": client.category,
        "DescuentoCliente": client.discount,
        "Peso": request.weight or 0,
        "Volumen": request.volume or 0,
        "CantidadBultos": request.piece_count or 0,
        "TipoCarga": request.cargo_type or "",
        "Urgencia": request.urgency or "",
    }
    variables.update(request.variables)
    return variables


def build_context(
    repository: Repository,
    request: CalculationRequest,
    settings: Settings = default_settings,
) -> TariffContext:
    """
    Loads client, sites, route, vehicle limits and the holiday flag concurrently.

    Raises ReferenceNotFoundError when the client, the origin or the destination is unknown.
    A missing route is not an error here; the resolver and calculator decide what it means.
    """
    with ThreadPoolExecutor(max_workers=settings.CONTEXT_LOOKUP_WORKERS, thread_name_prefix="tariff-ctx") as pool:
        client_future = pool.submit(repository.find_client_by_id, request.client_id)
        origin_future = pool.submit(repository.find_site_by_id, request.origin_id)
        destination_future = pool.submit(repository.find_site_by_id, request.destination_id)
        route_future = pool.submit(
            repository.find_route_by_client_origin_destination,
            request.client_id, request.origin_id, request.destination_id,
        )
        limits_future = (
            pool.submit(repository.find_vehicle_limits_by_unit_type, request.unit_type) if request.unit_type else None
        )
        holiday_future = pool.submit(repository.is_holiday, request.date.date())

        client = client_future.result()
        origin = origin_future.result()
        destination = destination_future.result()
        route = route_future.result()
        limits = limits_future.result() if limits_future else None
        holiday = holiday_future.result()

    if client is None:
        raise ReferenceNotFoundError(f"Client not found: {request.client_id}", details={"client_id": request.client_id})
    if origin is None:
        raise ReferenceNotFoundError(f"Origin site not found: {request.origin_id}", details={"origin_id": request.origin_id})
    if destination is None:
        raise ReferenceNotFoundError(
            f"Destination site not found: {request.destination_id}", details={"destination_id": request.destination_id}
        )

    variables = derive_variables(request, client, origin, destination, route, limits, holiday)
    logger.debug(
        f"Context built: client={client.id}, route={'yes' if route else 'no'}, "
        f"distance={variables['DistanciaReal']}, air_distance={variables['DistanciaAerea']}"
    )
    return TariffContext(MappingProxyType(variables), client, origin, destination, route)
