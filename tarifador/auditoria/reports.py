"""
Read-only reporting projections over audit records.
"""
from collections import Counter
from typing import Any, Callable, Dict, List, Sequence

from tarifador.auditoria.log import AuditRecord

UNKNOWN_METHOD = "unknown"
GROUP_CRITERIA = ("client", "method", "date", "hour")


def _method(entry: AuditRecord) -> str:
    return entry.result.method_used if entry.result else UNKNOWN_METHOD


def _total(entry: AuditRecord) -> float:
    return entry.result.total if entry.result else 0.0


_KEYS: Dict[str, Callable[[AuditRecord], Any]] = {
    "client": lambda e: e.context.client_id,
    "method": _method,
    "date": lambda e: e.timestamp.date().isoformat(),
    "hour": lambda e: e.timestamp.hour,
}


def group_records(records: Sequence[AuditRecord], criterion: str) -> Dict[Any, Dict[str, Any]]:
    """
    Groups records by client, method, date or hour.
    Each group reports count, errors, mean duration, summed and mean totals,
    and the distinct methods or clients it involves.
    """
    if criterion not in _KEYS:
        raise ValueError(f"Unknown grouping criterion: {criterion}. Expected one of {GROUP_CRITERIA}")

    key_of = _KEYS[criterion]
    buckets: Dict[Any, List[AuditRecord]] = {}
    for entry in records:
        buckets.setdefault(key_of(entry), []).append(entry)

    groups: Dict[Any, Dict[str, Any]] = {}
    for key, entries in buckets.items():
        totals = [_total(e) for e in entries]
        groups[key] = {
            "count": len(entries),
            "errors": sum(1 for e in entries if e.failed),
            "mean_duration_ms": sum(e.duration_ms for e in entries) / len(entries),
            "total_amount": round(sum(totals), 2),
            "mean_total": round(sum(totals) / len(totals), 2),
            "methods": sorted({_method(e) for e in entries}),
            "clients": sorted({e.context.client_id for e in entries}),
        }
    return groups


def performance_category(mean_duration_ms: float) -> str:
    if mean_duration_ms < 50:
        return "excellent"
    if mean_duration_ms < 100:
        return "good"
    if mean_duration_ms < 200:
        return "regular"
    return "needs optimisation"


def summarize(records: Sequence[AuditRecord]) -> Dict[str, Any]:
    if not records:
        return {
            "summary": {"total": 0, "errors": 0, "successes": 0, "success_rate": 0},
            "performance": {"mean_ms": 0, "min_ms": 0, "max_ms": 0, "category": "no data"},
            "methods": {},
            "cache": {"hits": 0, "requested": 0, "hit_rate": 0},
            "peak_hours": [],
        }

    errors = sum(1 for e in records if e.failed)
    successes = len(records) - errors
    durations = [e.duration_ms for e in records]
    mean_ms = sum(durations) / len(durations)

    requested = [e for e in records if e.context.use_cache]
    hits = sum(1 for e in requested if e.result and e.result.cache_hit)

    hours = Counter(e.timestamp.hour for e in records)
    peak_hours = [{"hour": hour, "count": count} for hour, count in hours.most_common(3)]

    return {
        "summary": {
            "total": len(records),
            "errors": errors,
            "successes": successes,
            "success_rate": round(successes / len(records) * 100),
        },
        "performance": {
            "mean_ms": round(mean_ms, 2),
            "min_ms": min(durations),
            "max_ms": max(durations),
            "category": performance_category(mean_ms),
        },
        "methods": dict(Counter(_method(e) for e in records if e.result)),
        "cache": {
            "hits": hits,
            "requested": len(requested),
            "hit_rate": round(hits / len(requested) * 100) if requested else 0,
        },
        "peak_hours": peak_hours,
    }
