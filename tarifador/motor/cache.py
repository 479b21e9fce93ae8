"""
Result cache for tariff calculations.
Entries expire a fixed time after being written, independent of access.
"""
import json
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Tuple

from tarifador.motor.schemas import CalculationRequest, CalculationResult

DEFAULT_MAXSIZE = 10000

# Request fields outside the routing key that still change the computed result
_RESULT_FIELDS = {
    "volume", "piece_count", "vehicles", "urgency", "cargo_type",
    "extras", "variables", "apply_rules", "include_breakdown",
}


def _number_key(value: Optional[float]) -> str:
    if not value:
        return "0"
    return str(int(value)) if float(value).is_integer() else repr(float(value))


def _inputs_key(request: CalculationRequest) -> str:
    inputs = request.model_dump(mode="json", include=_RESULT_FIELDS)
    return json.dumps(inputs, sort_keys=True, separators=(",", ":"), default=str)


def cache_key(request: CalculationRequest) -> str:
    """client|origin|destination|day|tramo|unit|method or auto|pallets|weight|other inputs as canonical JSON."""
    return "|".join((
        request.client_id,
        request.origin_id,
        request.destination_id,
        request.date.strftime("%Y-%m-%d"),
        request.tramo_type.value,
        request.unit_type or "",
        request.method_override or "auto",
        _number_key(request.pallets),
        _number_key(request.weight),
        _inputs_key(request),
    ))


class ResultCache:
    """
    Thread-safe TTL cache of calculation results.
    Expired entries are evicted lazily on access; the oldest entry goes first when full.
    Results are deep-copied in and out so callers never share state with a cached entry.
    """

    def __init__(
        self,
        ttl_seconds: float,
        maxsize: int = DEFAULT_MAXSIZE,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._entries: "OrderedDict[str, Tuple[float, CalculationResult]]" = OrderedDict()
        self._ttl = ttl_seconds
        self._maxsize = maxsize
        self._clock = clock
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Optional[CalculationResult]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry[0] > now:
                self._hits += 1
                return entry[1].model_copy(deep=True)
            if entry is not None:
                del self._entries[key]
            self._misses += 1
            return None

    def put(self, key: str, result: CalculationResult) -> None:
        expires_at = self._clock() + self._ttl
        stored = result.model_copy(deep=True)
        with self._lock:
            self._entries.pop(key, None)
            while len(self._entries) >= self._maxsize:
                self._entries.popitem(last=False)
            self._entries[key] = (expires_at, stored)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._entries),
                "maxsize": self._maxsize,
                "ttl_seconds": self._ttl,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / total if total else 0.0,
            }
