"""
Bounded in-memory audit trail of tariff calculations.
Every attempt is recorded, successful or not; the oldest records are evicted first.
"""
import threading
from collections import deque
from datetime import datetime
from typing import Deque, List, Optional

from pydantic import BaseModel, Field

from tarifador.core.config import settings
from tarifador.core.logger import logger
from tarifador.core.utils import utc_now
from tarifador.motor.schemas import CalculationRequest, CalculationResult


class AuditRecord(BaseModel):
    timestamp: datetime = Field(default_factory=utc_now)
    context: CalculationRequest
    result: Optional[CalculationResult] = None
    duration_ms: float = Field(..., ge=0)
    errors: List[str] = Field(default_factory=list)
    slow: bool = False

    @property
    def failed(self) -> bool:
        return bool(self.errors)


class AuditLog:
    """Thread-safe FIFO ring buffer of AuditRecord."""

    def __init__(self, capacity: int = settings.AUDIT_CAPACITY, slow_threshold_ms: float = settings.SLOW_CALCULATION_MS):
        self.capacity = capacity
        self.slow_threshold_ms = slow_threshold_ms
        self._records: Deque[AuditRecord] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def record(
        self,
        request: CalculationRequest,
        result: Optional[CalculationResult],
        duration_ms: float,
        errors: Optional[List[str]] = None,
    ) -> AuditRecord:
        entry = AuditRecord(
            context=request,
            result=result,
            duration_ms=max(duration_ms, 0.0),
            errors=list(errors or []),
            slow=duration_ms > self.slow_threshold_ms,
        )
        if entry.slow:
            logger.warning(
                f"Slow tariff calculation: {duration_ms:.1f} ms (client={request.client_id}, "
                f"route={request.origin_id}->{request.destination_id})"
            )
        with self._lock:
            self._records.append(entry)
        return entry

    def records(self) -> List[AuditRecord]:
        """Snapshot, oldest first."""
        with self._lock:
            return list(self._records)

    def query(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        client_id: Optional[str] = None,
        with_errors: Optional[bool] = None,
    ) -> List[AuditRecord]:
        """Filters the buffer; None means no filter on that criterion."""
        selected = []
        for entry in self.records():
            if since and entry.timestamp < since:
                continue
            if until and entry.timestamp > until:
                continue
            if client_id and entry.context.client_id != client_id:
                continue
            if with_errors is not None and entry.failed != with_errors:
                continue
            selected.append(entry)
        return selected

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
