import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from storefront.errors import (
    ConflictError, OrderNotFoundError, ProductNotFoundError, StateError, StockError, ValidationError
)
from storefront.models.base import utcnow
from storefront.models.coupon import Coupon, CouponType
from storefront.models.order import OrderStatus
from storefront.services.order_lifecycle import FORWARD_TRANSITIONS, OrderLifecycleService

from fakes import CUSTOMER_ID


async def place_order(checkout_service, **kwargs):
    return await checkout_service.checkout(
        CUSTOMER_ID,
        items=[{"product_id": 1, "quantity": 2}, {"product_id": 2, "quantity": 1}],
        **kwargs
    )


class TestStatusChanges:
    @pytest.mark.asyncio
    async def test_cancel_and_reactivate_restores_stock(self, checkout_service, lifecycle, catalog):
        order = await place_order(checkout_service)
        assert (catalog.stock_of(1), catalog.stock_of(2)) == (3, 4)

        cancelled = await lifecycle.set_status(order.order_id, OrderStatus.CANCELLED)
        assert cancelled.status == OrderStatus.CANCELLED
        assert (catalog.stock_of(1), catalog.stock_of(2)) == (5, 5)

        pending = await lifecycle.set_status(order.order_id, "pending")
        assert pending.status == OrderStatus.PENDING
        assert (catalog.stock_of(1), catalog.stock_of(2)) == (3, 4)

    @pytest.mark.asyncio
    async def test_repeated_cancel_releases_once(self, checkout_service, lifecycle, catalog):
        order = await place_order(checkout_service)

        await lifecycle.set_status(order.order_id, OrderStatus.CANCELLED)
        await lifecycle.set_status(order.order_id, OrderStatus.CANCELLED)

        assert catalog.stock_of(1) == 5
        assert catalog.releases == [(1, 2), (2, 1)]

    @pytest.mark.asyncio
    async def test_forward_moves_do_not_touch_stock(self, checkout_service, lifecycle, catalog):
        order = await place_order(checkout_service)

        for status in (OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED):
            order = await lifecycle.set_status(order.order_id, status)

        assert order.status == OrderStatus.SHIPPED
        assert catalog.stock_of(1) == 3
        assert catalog.releases == []

    @pytest.mark.asyncio
    async def test_note_and_actor_are_recorded(self, checkout_service, lifecycle):
        order = await place_order(checkout_service)

        updated = await lifecycle.set_status(
            order.order_id, OrderStatus.SHIPPED, note="Tracking 1Z999", actor="seller:9001"
        )

        entry = updated.status_history[-1]
        assert (entry.status, entry.note, entry.actor) == (OrderStatus.SHIPPED, "Tracking 1Z999", "seller:9001")

    @pytest.mark.asyncio
    async def test_same_status_note_is_appended(self, checkout_service, lifecycle, catalog):
        order = await place_order(checkout_service)

        updated = await lifecycle.set_status(order.order_id, OrderStatus.PENDING, note="Awaiting payment")

        assert updated.status == OrderStatus.PENDING
        assert updated.status_history[-1].note == "Awaiting payment"
        assert catalog.stock_of(1) == 3

    @pytest.mark.asyncio
    async def test_delivered_is_final(self, checkout_service, lifecycle, catalog):
        order = await place_order(checkout_service)
        await lifecycle.set_status(order.order_id, OrderStatus.DELIVERED)

        with pytest.raises(StateError):
            await lifecycle.set_status(order.order_id, OrderStatus.CANCELLED)

        unchanged = await lifecycle.set_status(order.order_id, OrderStatus.DELIVERED, note="again")
        assert unchanged.status == OrderStatus.DELIVERED
        assert all(entry.note != "again" for entry in unchanged.status_history)
        assert catalog.stock_of(1) == 3

    @pytest.mark.asyncio
    async def test_unknown_status(self, checkout_service, lifecycle):
        order = await place_order(checkout_service)

        with pytest.raises(ValidationError):
            await lifecycle.set_status(order.order_id, "lost")

    @pytest.mark.asyncio
    async def test_unknown_order(self, lifecycle):
        with pytest.raises(OrderNotFoundError):
            await lifecycle.set_status(999, OrderStatus.CONFIRMED)

    @pytest.mark.asyncio
    async def test_concurrent_change_is_a_conflict(self, checkout_service, lifecycle, orders):
        order = await place_order(checkout_service)
        find_by_id = orders.find_by_id

        async def stale_find(order_id):
            snapshot = await find_by_id(order_id)
            await orders.transition_status(order_id, snapshot.status, OrderStatus.CONFIRMED)
            return snapshot

        orders.find_by_id = stale_find

        with pytest.raises(ConflictError):
            await lifecycle.set_status(order.order_id, OrderStatus.SHIPPED)

    @pytest.mark.asyncio
    async def test_reactivation_needs_stock(self, checkout_service, lifecycle, catalog):
        order = await place_order(checkout_service)
        await lifecycle.set_status(order.order_id, OrderStatus.CANCELLED)
        catalog.set_stock(2, 0)

        with pytest.raises(StockError) as exc_info:
            await lifecycle.set_status(order.order_id, OrderStatus.CONFIRMED)

        assert [p.product_id for p in exc_info.value.problems] == [2]
        assert catalog.stock_of(1) == 5
        assert (await lifecycle.get_order(order.order_id)).status == OrderStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_status_change_is_notified(self, checkout_service, lifecycle, dispatcher, sink):
        order = await place_order(checkout_service)

        await lifecycle.set_status(order.order_id, OrderStatus.CONFIRMED)
        await dispatcher.drain()

        assert ("status_changed", order.order_id, OrderStatus.CONFIRMED) in sink.events


    @pytest.mark.asyncio
    async def test_failed_release_leaves_cancel_retryable(self, checkout_service, lifecycle, catalog):
        order = await place_order(checkout_service)
        release = catalog.release
        failures = []

        async def flaky_release(product_id, quantity):
            if not failures:
                failures.append(product_id)
                raise ConnectionError("database unavailable")
            await release(product_id, quantity)

        catalog.release = flaky_release

        with pytest.raises(ConnectionError):
            await lifecycle.set_status(order.order_id, OrderStatus.CANCELLED)
        assert (await lifecycle.get_order(order.order_id)).status == OrderStatus.PENDING
        assert (catalog.stock_of(1), catalog.stock_of(2)) == (3, 4)

        await lifecycle.set_status(order.order_id, OrderStatus.CANCELLED)
        assert (catalog.stock_of(1), catalog.stock_of(2)) == (5, 5)

        await lifecycle.set_status(order.order_id, OrderStatus.PENDING)
        assert (catalog.stock_of(1), catalog.stock_of(2)) == (3, 4)

    @pytest.mark.asyncio
    async def test_partial_release_is_taken_back(self, checkout_service, lifecycle, catalog):
        order = await place_order(checkout_service)
        release = catalog.release

        async def failing_release(product_id, quantity):
            if product_id == 2:
                raise ConnectionError("database unavailable")
            await release(product_id, quantity)

        catalog.release = failing_release

        with pytest.raises(ConnectionError):
            await lifecycle.set_status(order.order_id, OrderStatus.CANCELLED)

        reverted = await lifecycle.get_order(order.order_id)
        assert reverted.status == OrderStatus.PENDING
        assert reverted.status_history[-1].note == "Cancellation reverted: stock could not be restored"
        assert (catalog.stock_of(1), catalog.stock_of(2)) == (3, 4)

    @pytest.mark.asyncio
    async def test_caller_cancellation_does_not_interrupt_cancel(self, checkout_service, lifecycle, catalog):
        order = await place_order(checkout_service)
        started = asyncio.Event()
        proceed = asyncio.Event()
        release = catalog.release

        async def gated_release(product_id, quantity):
            started.set()
            await proceed.wait()
            await release(product_id, quantity)

        catalog.release = gated_release
        task = asyncio.create_task(lifecycle.set_status(order.order_id, OrderStatus.CANCELLED))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        proceed.set()
        await asyncio.sleep(0.05)

        assert (await lifecycle.get_order(order.order_id)).status == OrderStatus.CANCELLED
        assert (catalog.stock_of(1), catalog.stock_of(2)) == (5, 5)

    @pytest.mark.asyncio
    async def test_failed_release_during_reactivation(self, checkout_service, lifecycle, catalog, caplog):
        order = await checkout_service.checkout(CUSTOMER_ID, items=[
            {"product_id": 1, "quantity": 2},
            {"product_id": 2, "quantity": 1},
            {"product_id": 3, "quantity": 1},
        ])
        await lifecycle.set_status(order.order_id, OrderStatus.CANCELLED)
        catalog.set_stock(3, 0)
        release = catalog.release

        async def failing_release(product_id, quantity):
            if product_id == 2:
                raise ConnectionError("database unavailable")
            await release(product_id, quantity)

        catalog.release = failing_release

        with pytest.raises(StockError):
            await lifecycle.set_status(order.order_id, OrderStatus.PENDING)

        assert catalog.stock_of(1) == 5
        assert "Could not restore 1 units of product 2" in caplog.text

class TestTransitionTables:
    def test_permissive_table(self, lifecycle):
        assert lifecycle.can_transition(OrderStatus.PENDING, OrderStatus.DELIVERED)
        assert lifecycle.can_transition(OrderStatus.SHIPPED, OrderStatus.PENDING)
        assert not lifecycle.can_transition(OrderStatus.DELIVERED, OrderStatus.CANCELLED)

    @pytest.mark.asyncio
    async def test_forward_table(self, checkout_service, orders, catalog, dispatcher):
        strict = OrderLifecycleService(orders, catalog, dispatcher, transitions=FORWARD_TRANSITIONS)
        order = await place_order(checkout_service)

        with pytest.raises(StateError):
            await strict.set_status(order.order_id, OrderStatus.SHIPPED)

        confirmed = await strict.set_status(order.order_id, OrderStatus.CONFIRMED)
        assert confirmed.status == OrderStatus.CONFIRMED
        assert not strict.can_transition(OrderStatus.SHIPPED, OrderStatus.CANCELLED)


class TestEditOrder:
    @pytest.mark.asyncio
    async def test_existing_items_keep_their_price(self, checkout_service, lifecycle, catalog, caplog):
        order = await place_order(checkout_service)
        catalog.products[1] = catalog.products[1].model_copy(update={"price": Decimal("12.00")})

        edited = await lifecycle.edit_order(order.order_id, [
            {"product_id": 1, "quantity": 1},
            {"product_id": 3, "quantity": 2},
        ], actor="admin:1", note="Customer swapped the teapot")

        assert [(i.product_id, i.name, i.quantity, i.unit_price) for i in edited.items] == [
            (1, "Blue Mug", 1, Decimal("10.00")),
            (3, "Linen Towel", 2, Decimal("15.00")),
        ]
        assert edited.subtotal == Decimal("40.00")
        assert edited.total_price == Decimal("40.00")
        assert edited.status_history[-1].note == "Customer swapped the teapot"
        assert catalog.stock_of(1) == 3
        assert "stock was not re-validated" in caplog.text

    @pytest.mark.asyncio
    async def test_explicit_unit_price(self, checkout_service, lifecycle):
        order = await place_order(checkout_service)

        edited = await lifecycle.edit_order(order.order_id, [
            {"product_id": 3, "quantity": 1, "unit_price": "12.50"}
        ])

        assert edited.items[0].unit_price == Decimal("12.50")
        assert edited.total_price == Decimal("12.50")

    @pytest.mark.asyncio
    async def test_discount_is_clamped_to_new_subtotal(self, checkout_service, lifecycle, coupons):
        coupons.add(Coupon(
            coupon_id=1, code="TAKE15", name="Fifteen off", type=CouponType.FIXED_AMOUNT,
            value=Decimal("15"), start_date=utcnow() - timedelta(days=1)
        ))
        order = await place_order(checkout_service, coupon_code="TAKE15")
        assert order.total_price == Decimal("25.00")

        edited = await lifecycle.edit_order(order.order_id, [{"product_id": 1, "quantity": 1}])

        assert edited.discount == Decimal("10.00")
        assert edited.total_price == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_delivered_order_cannot_be_edited(self, checkout_service, lifecycle):
        order = await place_order(checkout_service)
        await lifecycle.set_status(order.order_id, OrderStatus.DELIVERED)

        with pytest.raises(StateError):
            await lifecycle.edit_order(order.order_id, [{"product_id": 1, "quantity": 1}])

    @pytest.mark.asyncio
    @pytest.mark.parametrize("items", [
        [],
        [{"product_id": 1, "quantity": 0}],
        [{"quantity": 1}],
    ])
    async def test_malformed_items(self, checkout_service, lifecycle, items):
        order = await place_order(checkout_service)

        with pytest.raises(ValidationError):
            await lifecycle.edit_order(order.order_id, items)

    @pytest.mark.asyncio
    async def test_unknown_product(self, checkout_service, lifecycle):
        order = await place_order(checkout_service)

        with pytest.raises(ProductNotFoundError):
            await lifecycle.edit_order(order.order_id, [{"product_id": 404, "quantity": 1}])
