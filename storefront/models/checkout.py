from decimal import Decimal
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field, model_validator
from .product import Product

class ItemRequest(BaseModel):
    """A caller-supplied line: by product id, or (deprecated) by name or SKU"""
    product_id: Optional[int] = None
    name: Optional[str] = None
    sku: Optional[str] = None
    quantity: int = Field(ge=1)
    expected_price: Optional[Decimal] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def require_reference(self):
        if self.product_id is None and not self.name and not self.sku:
            raise ValueError("one of product_id, name or sku is required")
        return self

    @property
    def reference(self) -> str:
        if self.product_id is not None:
            return str(self.product_id)
        return self.name or self.sku

class ProblemReason(str, Enum):
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"
    INSUFFICIENT_STOCK = "insufficient_stock"

class ItemProblem(BaseModel):
    """Why one entry of an item list could not be fulfilled"""
    index: int
    reference: str
    reason: ProblemReason
    product_id: Optional[int] = None
    requested: int
    available: Optional[int] = None

class ResolvedItem(BaseModel):
    product: Product
    quantity: int
    unit_price: Decimal

    @property
    def total_price(self) -> Decimal:
        return self.unit_price * self.quantity

class ResolvedItems(BaseModel):
    items: List[ResolvedItem]
    subtotal: Decimal

class CouponRejection(str, Enum):
    """Specific rule a coupon failed"""
    INVALID_CODE = "invalid_code"
    DISABLED = "disabled"
    NOT_STARTED = "not_started"
    EXPIRED = "expired"
    USAGE_LIMIT_REACHED = "usage_limit_reached"
    USER_LIMIT_REACHED = "user_limit_reached"
    MINIMUM_NOT_MET = "minimum_not_met"
    EXCLUDED_PRODUCT = "excluded_product"
    NOT_APPLICABLE = "not_applicable"

class CouponEvaluation(BaseModel):
    eligible: bool
    reason: Optional[CouponRejection] = None
    message: Optional[str] = None
    discount: Decimal = Decimal(0)
    final_total: Decimal
    free_shipping: bool = False

class CheckoutPreview(BaseModel):
    """Priced items plus coupon outcome, computed without side effects"""
    items: List[ResolvedItem]
    subtotal: Decimal
    evaluation: Optional[CouponEvaluation] = None

    @property
    def total_price(self) -> Decimal:
        if self.evaluation and self.evaluation.eligible:
            return self.evaluation.final_total
        return self.subtotal
