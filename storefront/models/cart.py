from decimal import Decimal
from typing import List, Optional
from pydantic import BaseModel, Field
from .base import TimeStampedModel

class CartItem(BaseModel):
    """A cart line; price is the product price when the line was added"""
    product_id: int
    quantity: int = Field(ge=1)
    price: Decimal = Field(ge=0)

class Cart(TimeStampedModel):
    """One cart per user, emptied after checkout"""
    cart_id: int
    user_id: int
    items: List[CartItem] = []

    @property
    def is_empty(self) -> bool:
        return not self.items

    @property
    def total_price(self) -> Decimal:
        return sum((item.price * item.quantity for item in self.items), Decimal(0))

    def find_item(self, product_id: int) -> Optional[CartItem]:
        return next((i for i in self.items if i.product_id == product_id), None)

class OutOfStockItem(BaseModel):
    product_id: int
    name: str
    requested: int
    available: int

class CartSummary(BaseModel):
    """Checkout-ready view of a cart"""
    items: List[CartItem] = []
    total_items: int = 0
    total_price: Decimal = Decimal(0)
    out_of_stock_items: List[OutOfStockItem] = []

    @property
    def is_empty(self) -> bool:
        return not self.items
