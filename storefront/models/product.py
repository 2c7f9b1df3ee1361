from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import Field
from .base import TimeStampedModel

class ProductStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    OUT_OF_STOCK = "out_of_stock"
    DISCONTINUED = "discontinued"

class Product(TimeStampedModel):
    """Product listed by a seller"""
    product_id: int
    seller_id: int
    name: str
    description: Optional[str] = None
    price: Decimal = Field(ge=0)
    stock: int = Field(default=0, ge=0)
    status: ProductStatus = ProductStatus.ACTIVE
    category: Optional[str] = None
    sku: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == ProductStatus.ACTIVE
