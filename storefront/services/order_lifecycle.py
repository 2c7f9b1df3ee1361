import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union

from ..errors import ConflictError, OrderNotFoundError, ProductNotFoundError, StateError, StockError, ValidationError
from ..models.checkout import ItemProblem, ProblemReason
from ..models.order import Order, OrderItem, OrderStatus, StatusChange, StatusHistoryEntry
from .interfaces import OrderStore, ProductLookup, StockLedger
from .notification_service import NotificationDispatcher

SYSTEM_ACTOR = "system"

TransitionTable = Mapping[OrderStatus, FrozenSet[OrderStatus]]

# Any status may be set on an order that has not been delivered
PERMISSIVE_TRANSITIONS: TransitionTable = {
    status: (frozenset() if status == OrderStatus.DELIVERED else frozenset(OrderStatus))
    for status in OrderStatus
}

FORWARD_TRANSITIONS: TransitionTable = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset({OrderStatus.PENDING}),
}

class OrderLifecycleService:
    """Status changes and edits of existing orders.

    Cancelling returns every item's quantity to stock and moving out of
    cancelled reserves it again. Status is flipped with a compare-and-set
    on the previous status, so a duplicated request applies its stock
    effect at most once.
    """

    def __init__(self, orders: OrderStore, stock: StockLedger, notifier: NotificationDispatcher,
                 products: Optional[ProductLookup] = None,
                 transitions: Optional[TransitionTable] = None):
        self.orders = orders
        self.stock = stock
        self.notifier = notifier
        self.products = products
        self.transitions = PERMISSIVE_TRANSITIONS if transitions is None else transitions
        self.logger = logging.getLogger(__name__)

    async def get_order(self, order_id: int) -> Order:
        order = await self.orders.find_by_id(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    def can_transition(self, current: OrderStatus, new: OrderStatus) -> bool:
        return new in self.transitions.get(current, frozenset())

    async def set_status(self, order_id: int, new_status: Union[OrderStatus, str],
                         note: Optional[str] = None, actor: str = SYSTEM_ACTOR) -> Order:
        try:
            new_status = OrderStatus(new_status)
        except ValueError:
            raise ValidationError(f"Unknown order status: {new_status}", {"status": str(new_status)})

        order = await self.get_order(order_id)
        current = order.status
        entry = StatusHistoryEntry(status=new_status, note=note, actor=actor) if note else None

        if new_status == current:
            if entry is None or current == OrderStatus.DELIVERED:
                return order
            order.status_history.append(entry)
            return await self.orders.save(order)

        if not self.can_transition(current, new_status):
            raise StateError(
                f"Cannot change order {order_id} from {current.value} to {new_status.value}",
                {"order_id": order_id, "from": current.value, "to": new_status.value}
            )

        updated = await asyncio.shield(self._apply(order, new_status, entry))

        self.logger.info(f"Order {order_id}: {current.value} -> {new_status.value} by {actor}")
        self.notifier.status_changed(
            updated,
            StatusChange(previous_status=current, new_status=new_status, note=note, actor=actor)
        )
        return updated

    async def _apply(self, order: Order, new_status: OrderStatus,
                     entry: Optional[StatusHistoryEntry]) -> Order:
        """Status flip plus its stock effect, run to completion even if the caller goes away"""
        if new_status == OrderStatus.CANCELLED:
            return await self._cancel(order, entry)
        if order.status == OrderStatus.CANCELLED:
            return await self._reactivate(order, new_status, entry)
        return await self._flip(order, new_status, entry)

    async def _flip(self, order: Order, new_status: OrderStatus,
                    entry: Optional[StatusHistoryEntry]) -> Order:
        updated = await self.orders.transition_status(order.order_id, order.status, new_status, entry)
        if updated is None:
            raise ConflictError(
                f"Order {order.order_id} was changed by another request",
                {"order_id": order.order_id}
            )
        return updated

    async def _cancel(self, order: Order, entry: Optional[StatusHistoryEntry]) -> Order:
        updated = await self._flip(order, OrderStatus.CANCELLED, entry)

        released: List[Tuple[int, int]] = []
        try:
            for item in order.items:
                await self.stock.release(item.product_id, item.quantity)
                released.append((item.product_id, item.quantity))
        except Exception:
            self.logger.exception(
                f"Restoring stock for cancelled order {order.order_id} failed; "
                f"reverting it to {order.status.value}"
            )
            await self._undo_cancel(order, released)
            raise
        return updated

    async def _undo_cancel(self, order: Order, released: List[Tuple[int, int]]):
        """Take back released units and restore the previous status so the cancel can be retried"""
        for product_id, quantity in released:
            try:
                if not await self.stock.try_reserve(product_id, quantity):
                    self.logger.error(
                        f"Could not take back {quantity} units of product {product_id} "
                        f"for order {order.order_id}"
                    )
            except Exception:
                self.logger.exception(
                    f"Could not take back {quantity} units of product {product_id} for order {order.order_id}"
                )

        entry = StatusHistoryEntry(
            status=order.status,
            note="Cancellation reverted: stock could not be restored",
            actor=SYSTEM_ACTOR
        )
        try:
            reverted = await self.orders.transition_status(
                order.order_id, OrderStatus.CANCELLED, order.status, entry
            )
        except Exception:
            self.logger.exception(f"Could not revert cancellation of order {order.order_id}")
            return
        if reverted is None:
            self.logger.error(f"Order {order.order_id} left its cancelled state while reverting")

    async def _reactivate(self, order: Order, new_status: OrderStatus,
                          entry: Optional[StatusHistoryEntry]) -> Order:
        reserved: List[Tuple[int, int]] = []
        problems: List[ItemProblem] = []

        for index, item in enumerate(order.items):
            if await self.stock.try_reserve(item.product_id, item.quantity):
                reserved.append((item.product_id, item.quantity))
            else:
                problems.append(ItemProblem(
                    index=index,
                    reference=str(item.product_id),
                    reason=ProblemReason.INSUFFICIENT_STOCK,
                    product_id=item.product_id,
                    requested=item.quantity
                ))

        if problems:
            await self._release(reserved)
            raise StockError(problems, f"Not enough stock to reactivate order {order.order_id}")

        try:
            return await self._flip(order, new_status, entry)
        except Exception:
            await self._release(reserved)
            raise

    async def _release(self, reserved: List[Tuple[int, int]]):
        for product_id, quantity in reversed(reserved):
            try:
                await self.stock.release(product_id, quantity)
            except Exception:
                self.logger.exception(f"Could not restore {quantity} units of product {product_id}")

    async def edit_order(self, order_id: int, items: List[Dict[str, Any]],
                         actor: str = SYSTEM_ACTOR, note: Optional[str] = None) -> Order:
        """Replace an order's items and recompute its totals.

        Products already on the order keep their frozen price. Stock is not
        re-validated or adjusted.
        """
        order = await self.get_order(order_id)
        if order.status == OrderStatus.DELIVERED:
            raise StateError(f"Order {order_id} has been delivered and can no longer be edited",
                             {"order_id": order_id})
        if not items:
            raise ValidationError("At least one item is required")

        frozen = {item.product_id: item for item in order.items}
        new_items = []
        missing = []
        for index, entry in enumerate(items):
            product_id = entry.get("product_id")
            quantity = entry.get("quantity")
            if not isinstance(product_id, int) or not isinstance(quantity, int) or quantity < 1:
                raise ValidationError("Each item needs a product_id and a quantity of at least 1",
                                      {"index": index})

            if product_id in frozen:
                name, unit_price = frozen[product_id].name, frozen[product_id].unit_price
            else:
                product = await self.products.find_by_id(product_id) if self.products else None
                if product is None:
                    missing.append(ItemProblem(
                        index=index,
                        reference=str(product_id),
                        reason=ProblemReason.NOT_FOUND,
                        requested=quantity
                    ))
                    continue
                name = product.name
                unit_price = Decimal(str(entry["unit_price"])) if entry.get("unit_price") is not None else product.price

            new_items.append(OrderItem(product_id=product_id, name=name, quantity=quantity, unit_price=unit_price))

        if missing:
            raise ProductNotFoundError(missing)

        subtotal = sum((item.total_price for item in new_items), Decimal(0))
        coupon = order.coupon
        if coupon is not None:
            coupon = coupon.model_copy(update={"discount": min(coupon.discount, subtotal)})
        discount = coupon.discount if coupon else Decimal(0)

        history = list(order.status_history)
        if note:
            history.append(StatusHistoryEntry(status=order.status, note=note, actor=actor))

        edited = order.model_copy(update={
            "items": new_items,
            "subtotal": subtotal,
            "total_price": subtotal - discount,
            "coupon": coupon,
            "status_history": history
        })
        self.logger.warning(f"Order {order_id} items edited by {actor}; stock was not re-validated")
        return await self.orders.save(edited)
