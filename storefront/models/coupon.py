from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional
from pydantic import Field, field_validator
from .base import TimeStampedModel, utcnow

class CouponType(str, Enum):
    """Discount kinds"""
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"
    FREE_SHIPPING = "free_shipping"
    BUY_ONE_GET_ONE = "buy_one_get_one"

class Coupon(TimeStampedModel):
    """Coupon definition"""
    coupon_id: int
    code: str
    name: str
    description: Optional[str] = None
    type: CouponType
    value: Decimal = Field(ge=0)  # percent or fixed amount
    minimum_amount: Decimal = Decimal(0)
    maximum_discount: Optional[Decimal] = None  # percentage coupons only
    usage_limit: Optional[int] = None
    usage_count: int = 0
    user_limit: Optional[int] = 1
    applicable_categories: List[str] = []
    applicable_products: List[int] = []
    excluded_products: List[int] = []
    start_date: datetime = Field(default_factory=utcnow)
    end_date: Optional[datetime] = None
    is_active: bool = True
    created_by: Optional[int] = None

    @field_validator("code")
    @classmethod
    def normalize_code(cls, value: str) -> str:
        return value.strip().upper()
