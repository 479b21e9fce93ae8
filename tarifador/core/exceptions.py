"""
Typed error hierarchy of the pricing pipeline.
Each error carries a stable code so callers can map failures without parsing messages.
"""
from typing import Any, Dict, Optional


class TariffError(Exception):
    """Base class for every failure raised by the tariff engine."""

    code = "TAR-000"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "error": type(self).__name__, "message": self.message, "details": self.details}


class ReferenceNotFoundError(TariffError):
    """Client, origin or destination could not be resolved."""

    code = "TAR-404"


class NoApplicableRouteError(TariffError):
    """No route or tariff record is valid for the requested pair, date and tramo type."""

    code = "TAR-410"


class InvalidFormulaDataError(TariffError):
    """The resolved tariff record lacks the calculation method or the rate."""

    code = "TAR-422"


class EvaluationError(TariffError):
    """A formula could not be reduced to a finite number."""

    code = "TAR-500"


class ValidationError(TariffError):
    """The final tariff or toll is negative or not a number."""

    code = "TAR-400"
