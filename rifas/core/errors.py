from typing import Any, Dict, List, Optional

# Códigos expuestos al front (mismos que usa el cliente web)
API_ERROR_CODES = {
    "UNKNOWN_ERROR": "UNKNOWN_ERROR",
    "VALIDATION_ERROR": "VALIDATION_ERROR",
    "NOT_FOUND": "NOT_FOUND",
    "RAFFLE_NOT_FOUND": "RAFFLE_NOT_FOUND",
    "RAFFLE_ENDED": "RAFFLE_ENDED",
    "TICKETS_NOT_AVAILABLE": "TICKETS_NOT_AVAILABLE",
    "MAX_TICKETS_EXCEEDED": "MAX_TICKETS_EXCEEDED",
    "INVALID_SIGNATURE": "INVALID_SIGNATURE",
    "INVALID_TRANSITION": "INVALID_TRANSITION",
    "ORDER_NOT_FOUND": "ORDER_NOT_FOUND",
    "ORDER_EXPIRED": "ORDER_EXPIRED",
    "TEMPORARILY_UNAVAILABLE": "TEMPORARILY_UNAVAILABLE",
}


class RaffleError(Exception):
    status_code = 500
    code = API_ERROR_CODES["UNKNOWN_ERROR"]

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_detail(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ValidationError(RaffleError):
    """Entrada mal formada o regla de negocio violada (corregible por el usuario)."""

    status_code = 400
    code = API_ERROR_CODES["VALIDATION_ERROR"]

    def __init__(self, message: str, violations: Optional[List[str]] = None, code: Optional[str] = None):
        super().__init__(message, code)
        self.violations = list(violations or [message])

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail["violations"] = self.violations
        return detail


class InvalidTransition(RaffleError):
    status_code = 409
    code = API_ERROR_CODES["INVALID_TRANSITION"]


class InventoryConflict(RaffleError):
    """Algún boleto dejó de estar disponible al congelar la orden."""

    status_code = 409
    code = API_ERROR_CODES["TICKETS_NOT_AVAILABLE"]

    def __init__(self, message: str, numbers: Optional[List[int]] = None):
        super().__init__(message)
        self.numbers = sorted(numbers or [])

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail["tickets"] = self.numbers
        return detail


class AuthenticityError(RaffleError):
    status_code = 401
    code = API_ERROR_CODES["INVALID_SIGNATURE"]


class NotFoundError(RaffleError):
    status_code = 404
    code = API_ERROR_CODES["NOT_FOUND"]


class TransientError(RaffleError):
    """Falla de una dependencia; el proveedor puede reintentar."""

    status_code = 503
    code = API_ERROR_CODES["TEMPORARILY_UNAVAILABLE"]
