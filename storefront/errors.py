"""Storefront exceptions.

Raised by the services when a business rule is violated. Every error
carries a machine-readable ``details`` payload so a transport layer can
itemise exactly which entries or rules failed.
"""
from typing import Any, Dict, List, Optional

from .models.checkout import CouponRejection, ItemProblem


class StorefrontError(Exception):
    """Base class for all storefront errors."""

    code = "storefront_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class ValidationError(StorefrontError):
    """Malformed input: missing items, bad quantities."""

    code = "validation_error"


class NotFoundError(StorefrontError):
    code = "not_found"


class ProductNotFoundError(NotFoundError):
    """One or more item entries did not match an orderable product."""

    code = "product_not_found"

    def __init__(self, problems: List[ItemProblem], message: str = "Some products could not be found"):
        super().__init__(message, {"problems": [p.model_dump(mode="json") for p in problems]})
        self.problems = problems


class OrderNotFoundError(NotFoundError):
    code = "order_not_found"

    def __init__(self, order_id: int):
        super().__init__(f"Order {order_id} not found", {"order_id": order_id})
        self.order_id = order_id


class StockError(StorefrontError):
    """Insufficient stock, itemised per product."""

    code = "out_of_stock"

    def __init__(self, problems: List[ItemProblem], message: str = "Insufficient stock for some items"):
        super().__init__(message, {"problems": [p.model_dump(mode="json") for p in problems]})
        self.problems = problems


class CouponError(StorefrontError):
    """Coupon code unknown, or a specific eligibility rule failed."""

    code = "coupon_error"

    def __init__(self, reason: CouponRejection, message: str, coupon_code: Optional[str] = None):
        super().__init__(message, {"reason": reason.value, "coupon_code": coupon_code})
        self.reason = reason
        self.coupon_code = coupon_code


class ConflictError(StorefrontError):
    """A concurrent request changed the state this one depended on."""

    code = "conflict"


class StockReservationError(ConflictError, StockError):
    """Stock ran out between validation and reservation; the order was rolled back."""

    code = "stock_reservation_conflict"

    def __init__(self, problems: List[ItemProblem], order_id: Optional[int] = None):
        StockError.__init__(self, problems, "Order could not be completed, please retry")
        self.details["order_id"] = order_id
        self.order_id = order_id


class StateError(StorefrontError):
    """Operation not allowed in the order's current status."""

    code = "invalid_state"
