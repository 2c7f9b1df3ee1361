from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from .base import TimeStampedModel, utcnow
from .coupon import CouponType

class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

class OrderItem(BaseModel):
    """Individual item in an order, priced at checkout time"""
    product_id: int
    name: str
    quantity: int = Field(ge=1)
    unit_price: Decimal = Field(ge=0)

    @property
    def total_price(self) -> Decimal:
        return self.unit_price * self.quantity

class AppliedCoupon(BaseModel):
    """Snapshot of the coupon as it was applied"""
    code: str
    type: CouponType
    value: Decimal
    discount: Decimal = Field(ge=0)

class StatusHistoryEntry(BaseModel):
    status: OrderStatus
    note: Optional[str] = None
    actor: str
    timestamp: datetime = Field(default_factory=utcnow)

class StatusChange(BaseModel):
    """Payload of a status-changed notification"""
    previous_status: OrderStatus
    new_status: OrderStatus
    note: Optional[str] = None
    actor: str

class Order(TimeStampedModel):
    """Order model for purchases"""
    order_id: Optional[int] = None  # assigned by the order store
    user_id: int
    status: OrderStatus = OrderStatus.PENDING
    items: List[OrderItem]
    subtotal: Decimal
    total_price: Decimal
    coupon: Optional[AppliedCoupon] = None
    free_shipping: bool = False
    status_history: List[StatusHistoryEntry] = []
    shipping_address: Optional[Dict[str, Any]] = None
    payment_method: Optional[str] = None

    @property
    def discount(self) -> Decimal:
        return self.coupon.discount if self.coupon else Decimal(0)

    @property
    def is_cancelled(self) -> bool:
        return self.status == OrderStatus.CANCELLED

    @property
    def is_completed(self) -> bool:
        return self.status == OrderStatus.DELIVERED
