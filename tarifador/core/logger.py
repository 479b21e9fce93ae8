"""
Structured logging configuration.
Provides the application logger, correlation-aware adapters and a dedicated audit trail channel.
"""
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, MutableMapping, Optional, Tuple

from tarifador.core.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(correlation_id)s | %(message)s"


class CorrelationIdFilter(logging.Filter):
    """Guarantees every record carries a correlation_id so the formatter never fails."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = "-"
        return True


class CorrelationAdapter(logging.LoggerAdapter):
    """Injects the correlation id of the current calculation into every log line."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        extra.setdefault("correlation_id", self.extra["correlation_id"])
        kwargs["extra"] = extra
        return msg, kwargs


def _build_logger(name: str) -> logging.Logger:
    instance = logging.getLogger(name)
    if not instance.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.addFilter(CorrelationIdFilter())
        instance.addHandler(handler)
    instance.setLevel(logging.DEBUG if settings.DEBUG else settings.LOG_LEVEL.upper())
    return instance


logger = _build_logger(settings.APP_NAME)
audit_logger = _build_logger(f"{settings.APP_NAME}.audit")


def get_logger_with_correlation(correlation_id: Optional[str]) -> CorrelationAdapter:
    """Returns a logger adapter bound to the given correlation id."""
    return CorrelationAdapter(logger, {"correlation_id": correlation_id or "-"})


def audit_log(action: str, user: str, resource: str, details: Optional[Dict[str, Any]] = None) -> None:
    """
    Emits a single JSON audit line.
    Values that are not JSON-native (datetimes, decimals) are rendered with str().
    """
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action,
        "user": user,
        "resource": resource,
        "details": details or {},
    }
    correlation_id = (details or {}).get("correlation_id", "-")
    audit_logger.info(json.dumps(entry, default=str, ensure_ascii=False), extra={"correlation_id": correlation_id})
