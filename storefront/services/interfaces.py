"""Collaborator interfaces used by the checkout and lifecycle services.

The core services program against these abstract classes. The asyncpg
services in this package implement them; tests swap in in-memory versions.
"""
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import List, Optional

from ..models.cart import Cart
from ..models.coupon import Coupon
from ..models.order import Order, OrderStatus, StatusChange, StatusHistoryEntry
from ..models.product import Product
from ..models.user import User


class ProductLookup(ABC):

    @abstractmethod
    async def find_by_id(self, product_id: int) -> Optional[Product]:
        ...

    @abstractmethod
    async def find_by_name(self, name: str) -> Optional[Product]:
        """Exact, case-insensitive name match among active products."""
        ...

    @abstractmethod
    async def find_by_name_like(self, pattern: str) -> Optional[Product]:
        """Case-insensitive substring match among active products."""
        ...

    @abstractmethod
    async def find_by_keywords_and_price(self, keywords: List[str], min_price: Decimal,
                                         max_price: Decimal) -> Optional[Product]:
        """Active product whose name contains any keyword, priced within the range."""
        ...

    @abstractmethod
    async def find_by_sku(self, sku: str) -> Optional[Product]:
        ...


class StockLedger(ABC):
    """The only way checkout and lifecycle code touches stock counters."""

    @abstractmethod
    async def try_reserve(self, product_id: int, quantity: int) -> bool:
        """Decrement stock by quantity if at least quantity is available.

        Returns:
            True when the decrement was applied, False otherwise.
        """
        ...

    @abstractmethod
    async def release(self, product_id: int, quantity: int) -> None:
        """Return previously reserved units to stock."""
        ...


class CouponStore(ABC):

    @abstractmethod
    async def find_active_by_code(self, code: str) -> Optional[Coupon]:
        ...

    @abstractmethod
    async def count_user_usage(self, coupon_id: int, user_id: int) -> int:
        ...

    @abstractmethod
    async def increment_usage(self, coupon_id: int, user_id: int, order_id: int) -> None:
        ...

    @abstractmethod
    async def release_usage(self, coupon_id: int, order_id: int) -> None:
        """Undo increment_usage for an order that was rolled back."""
        ...


class CartStore(ABC):

    @abstractmethod
    async def get_by_user(self, user_id: int) -> Cart:
        ...

    @abstractmethod
    async def clear(self, cart_id: int) -> None:
        ...


class OrderStore(ABC):

    @abstractmethod
    async def create(self, order: Order) -> Order:
        """Persist a new order and return it with its order_id assigned."""
        ...

    @abstractmethod
    async def find_by_id(self, order_id: int) -> Optional[Order]:
        ...

    @abstractmethod
    async def save(self, order: Order) -> Order:
        """Persist items, totals and any new status-history entries."""
        ...

    @abstractmethod
    async def transition_status(self, order_id: int, expected: OrderStatus, new: OrderStatus,
                                entry: Optional[StatusHistoryEntry] = None) -> Optional[Order]:
        """Set status to new only while it is still expected.

        Returns:
            The updated order, or None when the current status was not expected.
        """
        ...


class UserDirectory(ABC):

    @abstractmethod
    async def get_user(self, user_id: int) -> Optional[User]:
        ...


class NotificationSink(ABC):
    """Best-effort delivery of order events to customers."""

    async def start(self) -> None:
        """Open any connection the sink needs; called once at startup."""

    async def stop(self) -> None:
        pass

    @abstractmethod
    async def order_created(self, order: Order, user: User) -> None:
        ...

    @abstractmethod
    async def status_changed(self, order: Order, user: User, status_change: StatusChange) -> None:
        ...
