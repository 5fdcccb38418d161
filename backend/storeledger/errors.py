"""
Error taxonomy for the stock/sale/refund core.

Every rejection carries a stable code, an HTTP status and a details dict so
routes can answer without knowing which component raised it.
"""

from __future__ import annotations


class CoreError(Exception):
    """Base class for every expected failure of the core."""
    code = "CORE_ERROR"
    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(CoreError):
    """400-level input problem."""
    code = "VALIDATION_ERROR"


class InsufficientStock(CoreError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, *, store_id: int, product_id: int, available: int, requested: int):
        self.store_id = store_id
        self.product_id = product_id
        self.available = available
        self.requested = requested
        self.shortage = max(0, requested - available)
        super().__init__(
            f"Insufficient stock for product {product_id} in store {store_id}. "
            f"Available: {available}, requested: {requested}",
            details={
                "store_id": store_id,
                "product_id": product_id,
                "available": available,
                "requested": requested,
                "shortage": self.shortage,
            },
        )


class SaleNotFound(CoreError):
    code = "SALE_NOT_FOUND"
    status_code = 404


class RefundNotFound(CoreError):
    code = "REFUND_NOT_FOUND"
    status_code = 404


class RefundWindowExpired(CoreError):
    code = "REFUND_WINDOW_EXPIRED"


class AlreadyRefunded(CoreError):
    code = "ALREADY_REFUNDED"


class RefundAmountExceeded(CoreError):
    code = "REFUND_AMOUNT_EXCEEDED"


class AmountMismatch(CoreError):
    code = "AMOUNT_MISMATCH"


class RefundNotAllowed(CoreError):
    code = "REFUND_NOT_ALLOWED"


class AccessDenied(CoreError):
    code = "ACCESS_DENIED"
    status_code = 403


class InternalError(CoreError):
    """Storage or cross-component failure; stock consistency may need attention."""
    code = "INTERNAL_ERROR"
    status_code = 500


class StockOutcomeUnknown(InternalError):
    """A stock mutation failed at the storage layer; it may or may not have applied."""
    code = "STOCK_OUTCOME_UNKNOWN"


class CompensationFailed(InternalError):
    """A saga could not undo a completed step."""
    code = "COMPENSATION_FAILED"
