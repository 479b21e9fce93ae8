import math
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

TWO_DEC = Decimal("0.01")
ONE = Decimal("1")

# Mean Earth radius used by the great-circle distance
EARTH_RADIUS_KM = 6371.0

# Values closer than this to a .5 boundary are treated as sitting on it (float artifacts such as
# 1.005 * 100 == 100.49999999999999).
ROUNDING_TOLERANCE_DIGITS = 9


def round2(value: float) -> float:
    """Rounds half away from zero to two decimals."""
    return float(Decimal(repr(float(value))).quantize(TWO_DEC, rounding=ROUND_HALF_UP))


def round_half_away(value: float, digits: int = 0) -> float:
    """
    Rounds half away from zero to the given number of decimals.
    The input is first snapped to ROUNDING_TOLERANCE_DIGITS so binary artifacts do not flip the result.
    """
    if abs(value) >= 1e15:
        return float(value)
    snapped = round(float(value), ROUNDING_TOLERANCE_DIGITS)
    unit = Decimal(1).scaleb(-int(digits))
    return float(Decimal(repr(snapped)).quantize(unit, rounding=ROUND_HALF_UP))


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalizes aware datetimes to naive UTC so every comparison in the engine is consistent."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def epoch_millis(value: datetime) -> int:
    """Milliseconds since the Unix epoch, treating naive datetimes as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def js_weekday(value: datetime) -> int:
    """Weekday numbered 0=Sunday .. 6=Saturday."""
    return value.isoweekday() % 7


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometres between two coordinates."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
