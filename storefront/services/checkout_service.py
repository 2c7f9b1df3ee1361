import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from ..errors import CouponError, StockReservationError, ValidationError
from ..models.cart import Cart
from ..models.checkout import (
    CheckoutPreview, CouponEvaluation, CouponRejection, ItemProblem, ProblemReason,
    ResolvedItem, ResolvedItems
)
from ..models.coupon import Coupon
from ..models.order import AppliedCoupon, Order, OrderItem, OrderStatus, StatusHistoryEntry
from .coupon_evaluator import evaluate_coupon
from .interfaces import CartStore, CouponStore, OrderStore, StockLedger
from .item_resolver import ItemResolver
from .notification_service import NotificationDispatcher

SYSTEM_ACTOR = "system"

class CheckoutService:
    """Turns a cart or an explicit item list into a persisted order.

    Validation (items, stock, coupon) happens before anything is written.
    Once the order row exists, stock reservation, coupon usage and cart
    clearing run as one unit that is shielded from caller cancellation and
    either completes or is rolled back.
    """

    def __init__(self, resolver: ItemResolver, stock: StockLedger, coupons: CouponStore,
                 carts: CartStore, orders: OrderStore, notifier: NotificationDispatcher):
        self.resolver = resolver
        self.stock = stock
        self.coupons = coupons
        self.carts = carts
        self.orders = orders
        self.notifier = notifier
        self.logger = logging.getLogger(__name__)

    async def checkout(self, user_id: int, items: Optional[List[Dict[str, Any]]] = None,
                       coupon_code: Optional[str] = None,
                       shipping_address: Optional[Dict[str, Any]] = None,
                       payment_method: Optional[str] = None,
                       expected_total: Optional[Decimal] = None) -> Order:
        """Place an order; items=None checks out the user's cart"""
        cart, entries = await self._load_source(user_id, items)
        resolved = await self.resolver.resolve(entries)

        coupon = None
        evaluation = None
        if coupon_code and coupon_code.strip():
            coupon, evaluation = await self._evaluate_coupon(user_id, coupon_code, resolved)
            if not evaluation.eligible:
                raise CouponError(evaluation.reason, evaluation.message, coupon.code)

        order = self._build_order(user_id, resolved, coupon, evaluation, shipping_address, payment_method)

        if expected_total is not None and not self.resolver.within_tolerance(expected_total, order.total_price):
            self.logger.warning(
                f"Client total {expected_total} for user {user_id} differs from "
                f"computed total {order.total_price}; computed total is used"
            )

        return await asyncio.shield(self._commit(order, resolved.items, coupon, cart))

    async def preview(self, user_id: int, coupon_code: Optional[str] = None,
                      items: Optional[List[Dict[str, Any]]] = None) -> CheckoutPreview:
        """Price items and check a coupon without writing anything"""
        _, entries = await self._load_source(user_id, items)
        resolved = await self.resolver.resolve(entries)

        evaluation = None
        if coupon_code and coupon_code.strip():
            try:
                _, evaluation = await self._evaluate_coupon(user_id, coupon_code, resolved)
            except CouponError as e:
                evaluation = CouponEvaluation(
                    eligible=False,
                    reason=e.reason,
                    message=e.message,
                    final_total=resolved.subtotal
                )

        return CheckoutPreview(items=resolved.items, subtotal=resolved.subtotal, evaluation=evaluation)

    async def _load_source(self, user_id: int,
                           items: Optional[List[Dict[str, Any]]]) -> Tuple[Optional[Cart], List[Dict[str, Any]]]:
        if items is not None:
            return None, items

        cart = await self.carts.get_by_user(user_id)
        if cart.is_empty:
            raise ValidationError("Cart is empty", {"user_id": user_id})

        entries = [
            {"product_id": item.product_id, "quantity": item.quantity, "expected_price": item.price}
            for item in cart.items
        ]
        return cart, entries

    async def _evaluate_coupon(self, user_id: int, coupon_code: str,
                               resolved: ResolvedItems) -> Tuple[Coupon, CouponEvaluation]:
        code = coupon_code.strip().upper()
        coupon = await self.coupons.find_active_by_code(code)
        if coupon is None:
            raise CouponError(CouponRejection.INVALID_CODE, "Invalid or expired coupon code", code)

        prior_usage = 0
        if coupon.user_limit is not None:
            prior_usage = await self.coupons.count_user_usage(coupon.coupon_id, user_id)

        evaluation = evaluate_coupon(coupon, resolved.items, resolved.subtotal, prior_usage)
        return coupon, evaluation

    def _build_order(self, user_id: int, resolved: ResolvedItems, coupon: Optional[Coupon],
                     evaluation: Optional[CouponEvaluation],
                     shipping_address: Optional[Dict[str, Any]],
                     payment_method: Optional[str]) -> Order:
        applied = None
        total = resolved.subtotal
        if coupon is not None:
            applied = AppliedCoupon(
                code=coupon.code,
                type=coupon.type,
                value=coupon.value,
                discount=evaluation.discount
            )
            total = evaluation.final_total

        return Order(
            user_id=user_id,
            status=OrderStatus.PENDING,
            items=[
                OrderItem(
                    product_id=item.product.product_id,
                    name=item.product.name,
                    quantity=item.quantity,
                    unit_price=item.unit_price
                )
                for item in resolved.items
            ],
            subtotal=resolved.subtotal,
            total_price=total,
            coupon=applied,
            free_shipping=bool(evaluation and evaluation.free_shipping),
            status_history=[],
            shipping_address=shipping_address,
            payment_method=payment_method
        )

    async def _commit(self, order: Order, items: List[ResolvedItem], coupon: Optional[Coupon],
                      cart: Optional[Cart]) -> Order:
        order = await self.orders.create(order)

        reserved: List[Tuple[int, int]] = []
        coupon_used = False
        failed = None
        try:
            failed = await self._reserve_stock(items, reserved)
            if failed is None:
                if coupon is not None:
                    await self.coupons.increment_usage(coupon.coupon_id, order.user_id, order.order_id)
                    coupon_used = True

                if cart is not None:
                    await self.carts.clear(cart.cart_id)
        except Exception as e:
            await self._roll_back(
                order, reserved, coupon if coupon_used else None,
                f"Checkout failed: {e}"
            )
            raise

        if failed is not None:
            await self._roll_back(
                order, reserved, None,
                f"Stock reservation failed for product {failed.product_id}"
            )
            raise StockReservationError([failed], order.order_id)

        self.logger.info(
            f"Order {order.order_id} created for user {order.user_id}: "
            f"{len(order.items)} items, total {order.total_price}"
        )
        self.notifier.order_created(order)
        return order

    async def _reserve_stock(self, items: List[ResolvedItem],
                             reserved: List[Tuple[int, int]]) -> Optional[ItemProblem]:
        """Reserve items in order, stopping at the first one that cannot be reserved"""
        for index, item in enumerate(items):
            product_id = item.product.product_id
            if not await self.stock.try_reserve(product_id, item.quantity):
                return ItemProblem(
                    index=index,
                    reference=str(product_id),
                    reason=ProblemReason.INSUFFICIENT_STOCK,
                    product_id=product_id,
                    requested=item.quantity
                )
            reserved.append((product_id, item.quantity))
        return None

    async def _roll_back(self, order: Order, reserved: List[Tuple[int, int]],
                         coupon: Optional[Coupon], note: str):
        """Undo a partially committed checkout and cancel the order"""
        self.logger.warning(f"Rolling back order {order.order_id}: {note}")

        for product_id, quantity in reversed(reserved):
            try:
                await self.stock.release(product_id, quantity)
            except Exception:
                self.logger.exception(
                    f"Could not restore {quantity} units of product {product_id} for order {order.order_id}"
                )

        if coupon is not None:
            try:
                await self.coupons.release_usage(coupon.coupon_id, order.order_id)
            except Exception:
                self.logger.exception(f"Could not release coupon {coupon.code} for order {order.order_id}")

        entry = StatusHistoryEntry(status=OrderStatus.CANCELLED, note=note, actor=SYSTEM_ACTOR)
        try:
            cancelled = await self.orders.transition_status(
                order.order_id, OrderStatus.PENDING, OrderStatus.CANCELLED, entry
            )
        except Exception:
            self.logger.exception(f"Could not cancel order {order.order_id} during rollback")
            return
        if cancelled is None:
            self.logger.error(f"Order {order.order_id} left its pending state during rollback")
