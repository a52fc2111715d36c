"""
errors.py
=========
Typed failures raised by the services.

Every error carries a stable machine-readable `code` next to its human
message, so callers can branch without string matching. `main.py` turns
them into `{"detail": ..., "code": ...}` responses.
"""

from typing import Optional


class AppError(Exception):
    status_code = 400
    code = "BAD_REQUEST"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class NotFound(AppError):
    status_code = 404
    code = "NOT_FOUND"


class Unavailable(AppError):
    code = "PRODUCT_UNAVAILABLE"


class InvalidState(AppError):
    code = "INVALID_STATE"


class Expired(InvalidState):
    code = "COUPON_EXPIRED"


class Inactive(InvalidState):
    code = "COUPON_INACTIVE"


class InsufficientStock(AppError):
    code = "INSUFFICIENT_STOCK"


class QuantityLimitExceeded(AppError):
    code = "QUANTITY_LIMIT_EXCEEDED"


class MinPurchaseNotMet(AppError):
    code = "MIN_PURCHASE_NOT_MET"


class Conflict(AppError):
    status_code = 409
    code = "CONFLICT"


class Unauthorized(AppError):
    status_code = 401
    code = "UNAUTHORIZED"


class Forbidden(AppError):
    status_code = 403
    code = "FORBIDDEN"


class AlreadyProcessing(AppError):
    """Double submission of the same action; expected, not an incident."""

    status_code = 429
    code = "ALREADY_PROCESSING"


class DependencyUnavailable(AppError):
    status_code = 503
    code = "DEPENDENCY_UNAVAILABLE"
