"""
Error taxonomy shared by the storefront services.

Every service raises a subclass of ShopError; the HTTP layer renders it as
{"detail": message, "reason": reason} with the class's status code.
"""
from typing import Optional


class ShopError(Exception):
    status_code = 500
    reason = "error"

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if reason is not None:
            self.reason = reason


class ValidationError(ShopError):
    """Malformed or incomplete input. Never retried."""
    status_code = 400
    reason = "invalid"


class NotFoundError(ShopError):
    status_code = 404
    reason = "not_found"


class ConflictError(ShopError):
    """State changed underneath the caller; re-fetch before retrying."""
    status_code = 409
    reason = "conflict"


class IneligibleError(ShopError):
    """A coupon or offer failed one of its eligibility checks."""
    status_code = 422
    reason = "ineligible"


class DependencyError(ShopError):
    status_code = 503
    reason = "dependency_failed"


class ProductNotFound(NotFoundError):
    reason = "product_not_found"


class VariantNotFound(NotFoundError):
    reason = "variant_not_found"


class InsufficientStock(ConflictError):
    reason = "insufficient_stock"


class OrderLimitExceeded(ValidationError):
    reason = "order_limit_exceeded"


class InvalidTransition(ConflictError):
    reason = "invalid_transition"
