# backend/errors.py

"""
Logistics error hierarchy.

Every service raises one of these; server.py maps them to
``{"error": message}`` JSON with the carried HTTP status.
"""

from typing import Optional


class LogisticsError(Exception):
    """Base logistics error"""
    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None, field: Optional[str] = None):
        self.message = message
        self.error_code = error_code or self.default_code
        self.field = field
        super().__init__(self.message)


class ValidationFailed(LogisticsError):
    """Missing or invalid input"""
    status_code = 400
    default_code = "VALIDATION_FAILED"


class Unauthorized(LogisticsError):
    status_code = 401
    default_code = "UNAUTHORIZED"


class Forbidden(LogisticsError):
    status_code = 403
    default_code = "FORBIDDEN"


class NotFound(LogisticsError):
    status_code = 404
    default_code = "NOT_FOUND"

    def __init__(self, entity: str, message: Optional[str] = None):
        self.entity = entity
        super().__init__(message or f"{entity} not found")


class Conflict(LogisticsError):
    """Duplicate keys, lost races and illegal state transitions"""
    status_code = 409
    default_code = "CONFLICT"


class CapacityExceeded(Conflict):
    """Planned quantity would exceed the trip's vehicle capacity"""
    def __init__(self, requested: float, available: float):
        self.requested = requested
        self.available = available
        super().__init__(
            f"Order quantity ({requested:g} L) exceeds available capacity ({available:g} L)",
            error_code="CAPACITY_EXCEEDED",
            field="quantity",
        )


class SequenceExhausted(Conflict):
    """Running number for a prefix has passed 999"""
    def __init__(self, prefix: str):
        self.prefix = prefix
        super().__init__(
            f"Order number sequence exhausted for {prefix}",
            error_code="SEQUENCE_EXHAUSTED",
        )


class InsufficientStock(ValidationFailed):
    def __init__(self, vehicle_no: str, requested: float):
        self.vehicle_no = vehicle_no
        self.requested = requested
        super().__init__(
            "Insufficient vehicle stock",
            error_code="INSUFFICIENT_STOCK",
            field="qty",
        )


class InvalidLoadingCode(Forbidden):
    def __init__(self):
        super().__init__("Invalid or expired code", error_code="INVALID_LOADING_CODE", field="code")
