"""
Tariff engine orchestrator.
Runs context building, resolution, base calculation and rules, backed by a result cache and an audit trail.
"""
import time
import uuid
from typing import List, Optional

from tarifador.auditoria.log import AuditLog, AuditRecord
from tarifador.catalogo.repository import Repository
from tarifador.core.config import Settings, settings as default_settings
from tarifador.core.exceptions import TariffError
from tarifador.core.logger import CorrelationAdapter, audit_log, get_logger_with_correlation
from tarifador.motor.cache import ResultCache, cache_key
from tarifador.motor.calculator import build_breakdown, calculate_base, ensure_valid
from tarifador.motor.context import build_context
from tarifador.motor.resolver import record_usage, resolve
from tarifador.motor.rules import apply_rules
from tarifador.motor.schemas import CalculationRequest, CalculationResult


def describe_error(error: Exception) -> str:
    if isinstance(error, TariffError):
        return f"{error.code} {type(error).__name__}: {error.message}"
    return f"{type(error).__name__}: {error}"


class TariffEngine:
    """
    Explicit engine value owning the result cache and the audit log.
    Build one at process start and share it; calculate() is safe to call from many threads.
    """

    def __init__(
        self,
        repository: Repository,
        settings: Settings = default_settings,
        cache: Optional[ResultCache] = None,
        audit: Optional[AuditLog] = None,
    ):
        self.repository = repository
        self.settings = settings
        self.cache = cache if cache is not None else ResultCache(settings.CACHE_TTL_SECONDS)
        self.audit = audit if audit is not None else AuditLog(settings.AUDIT_CAPACITY, settings.SLOW_CALCULATION_MS)

    def calculate(self, request: CalculationRequest, correlation_id: Optional[str] = None) -> CalculationResult:
        """
        Computes the tariff for a request.

        Every attempt is written to the audit log. Fatal errors are re-raised unchanged;
        cache and audit failures are logged and never reach the caller.
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        log = get_logger_with_correlation(correlation_id)
        started = time.perf_counter()
        log.info(
            f"Tariff calculation started: client={request.client_id}, "
            f"route={request.origin_id}->{request.destination_id}, date={request.date.date()}"
        )

        try:
            result = self._from_cache(request, log)
            if result is None:
                result = self._compute(request, log)
                self._to_cache(request, result, log)
        except Exception as e:
            duration_ms = (time.perf_counter() - started) * 1000
            log.error(f"Tariff calculation failed after {duration_ms:.1f} ms: {describe_error(e)}")
            self._record(request, None, duration_ms, [describe_error(e)], log)
            raise

        duration_ms = (time.perf_counter() - started) * 1000
        self._record(request, result, duration_ms, [], log)
        audit_log(
            action="tariff_calculation",
            user=request.client_id,
            resource=f"route:{request.origin_id}->{request.destination_id}",
            details={
                "method": result.method_used,
                "total": result.total,
                "cache_hit": result.cache_hit,
                "rules": [r.code for r in result.applied_rules],
                "duration_ms": round(duration_ms, 2),
                "correlation_id": correlation_id,
            },
        )
        log.info(
            f"Tariff calculation finished: method={result.method_used}, total={result.total}, "
            f"cache_hit={result.cache_hit}, duration={duration_ms:.1f} ms"
        )
        return result

    def _compute(self, request: CalculationRequest, log: CorrelationAdapter) -> CalculationResult:
        context = build_context(self.repository, request, self.settings)
        resolution = resolve(self.repository, request, context, self.settings)
        if resolution.custom_formula is not None:
            record_usage(self.repository, resolution.custom_formula.id)

        result, variables = calculate_base(context, resolution, request)
        steps = []
        if request.apply_rules:
            result, steps = apply_rules(self.repository, result, variables, request)
            if result.applied_rules:
                log.info(f"Rules applied: {[r.code for r in result.applied_rules]}")

        ensure_valid(result)

        if request.include_breakdown:
            result = result.model_copy(update={"breakdown": build_breakdown(result, variables, request, steps)})
        return result

    def _from_cache(self, request: CalculationRequest, log: CorrelationAdapter) -> Optional[CalculationResult]:
        if not request.use_cache:
            return None
        try:
            cached = self.cache.get(cache_key(request))
        except Exception as e:
            log.warning(f"Cache read failed, computing without cache: {e}")
            return None
        if cached is None:
            return None
        log.debug("Cache hit")
        return cached.model_copy(update={"cache_hit": True})

    def _to_cache(self, request: CalculationRequest, result: CalculationResult, log: CorrelationAdapter) -> None:
        if not request.use_cache:
            return
        try:
            self.cache.put(cache_key(request), result)
        except Exception as e:
            log.warning(f"Cache write failed, result not memoized: {e}")

    def _record(
        self,
        request: CalculationRequest,
        result: Optional[CalculationResult],
        duration_ms: float,
        errors: List[str],
        log: CorrelationAdapter,
    ) -> None:
        try:
            self.audit.record(request, result, duration_ms, errors)
        except Exception as e:
            log.warning(f"Audit record could not be written: {e}")

    def clear_cache(self) -> None:
        self.cache.clear()

    def cache_stats(self) -> dict:
        return self.cache.stats()

    def audit_records(self, **filters) -> List[AuditRecord]:
        """Audit records matching AuditLog.query() filters."""
        return self.audit.query(**filters)
