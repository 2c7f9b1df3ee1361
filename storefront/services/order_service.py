import json
import logging
from typing import Dict, List, Optional, Any
from ..models.order import AppliedCoupon, Order, OrderStatus, StatusHistoryEntry
from .interfaces import OrderStore

ORDER_QUERY = """
    SELECT o.*,
        (SELECT json_agg(json_build_object(
            'product_id', oi.product_id,
            'name', oi.name,
            'quantity', oi.quantity,
            'unit_price', oi.unit_price::text
        ) ORDER BY oi.position)
        FROM order_items oi
        WHERE oi.order_id = o.order_id
        ) as items,
        (SELECT json_agg(json_build_object(
            'status', h.status,
            'note', h.note,
            'actor', h.actor,
            'timestamp', h.created_at
        ) ORDER BY h.entry_id)
        FROM order_status_history h
        WHERE h.order_id = o.order_id
        ) as status_history
    FROM orders o
"""

class OrderService(OrderStore):
    def __init__(self, db):
        self.db = db
        self.logger = logging.getLogger(__name__)

    async def create(self, order: Order) -> Order:
        """Insert the order with its items"""
        async with self.db.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow("""
                    INSERT INTO orders (
                        user_id, status, subtotal, total_price,
                        coupon_code, coupon_type, coupon_value, discount_amount,
                        free_shipping, shipping_address, payment_method
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                    RETURNING order_id, created_at
                """,
                    order.user_id,
                    order.status.value,
                    order.subtotal,
                    order.total_price,
                    order.coupon.code if order.coupon else None,
                    order.coupon.type.value if order.coupon else None,
                    order.coupon.value if order.coupon else None,
                    order.discount,
                    order.free_shipping,
                    json.dumps(order.shipping_address) if order.shipping_address is not None else None,
                    order.payment_method
                )

                await self._insert_items(conn, row['order_id'], order)
                await self._insert_history(conn, row['order_id'], order.status_history)

                return order.model_copy(update={
                    'order_id': row['order_id'],
                    'created_at': row['created_at']
                })

    async def find_by_id(self, order_id: int) -> Optional[Order]:
        async with self.db.pool.acquire() as conn:
            return await self._load(conn, order_id)

    async def save(self, order: Order) -> Order:
        """Persist items and totals; status only changes through transition_status"""
        async with self.db.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("""
                    UPDATE orders
                    SET subtotal = $1,
                        total_price = $2,
                        discount_amount = $3,
                        shipping_address = $4,
                        payment_method = $5,
                        updated_at = CURRENT_TIMESTAMP
                    WHERE order_id = $6
                """,
                    order.subtotal,
                    order.total_price,
                    order.discount,
                    json.dumps(order.shipping_address) if order.shipping_address is not None else None,
                    order.payment_method,
                    order.order_id
                )

                await conn.execute("DELETE FROM order_items WHERE order_id = $1", order.order_id)
                await self._insert_items(conn, order.order_id, order)

                # History is append-only: write only the entries not stored yet
                stored = await conn.fetchval("""
                    SELECT COUNT(*) FROM order_status_history WHERE order_id = $1
                """, order.order_id)
                await self._insert_history(conn, order.order_id, order.status_history[stored:])

                return await self._load(conn, order.order_id)

    async def transition_status(self, order_id: int, expected: OrderStatus, new: OrderStatus,
                                entry: Optional[StatusHistoryEntry] = None) -> Optional[Order]:
        async with self.db.pool.acquire() as conn:
            async with conn.transaction():
                result = await conn.execute("""
                    UPDATE orders
                    SET status = $1, updated_at = CURRENT_TIMESTAMP
                    WHERE order_id = $2 AND status = $3
                """, new.value, order_id, expected.value)

                if result != "UPDATE 1":
                    return None

                if entry is not None:
                    await self._insert_history(conn, order_id, [entry])

                return await self._load(conn, order_id)

    async def get_user_orders(self, user_id: int, limit: int = 10) -> List[Order]:
        """Most recent orders of a user"""
        async with self.db.pool.acquire() as conn:
            rows = await conn.fetch(ORDER_QUERY + """
                WHERE o.user_id = $1
                ORDER BY o.created_at DESC
                LIMIT $2
            """, user_id, limit)
            return [self._to_order(row) for row in rows]

    async def search_orders(self, search_params: Dict[str, Any]) -> List[Order]:
        """Filter orders by status, user and creation date"""
        query = ORDER_QUERY + " WHERE 1=1"
        params = []
        param_index = 1

        if 'status' in search_params:
            query += f" AND o.status = ${param_index}"
            params.append(OrderStatus(search_params['status']).value)
            param_index += 1

        if 'user_id' in search_params:
            query += f" AND o.user_id = ${param_index}"
            params.append(search_params['user_id'])
            param_index += 1

        if 'date_from' in search_params:
            query += f" AND o.created_at >= ${param_index}"
            params.append(search_params['date_from'])
            param_index += 1

        if 'date_to' in search_params:
            query += f" AND o.created_at <= ${param_index}"
            params.append(search_params['date_to'])
            param_index += 1

        query += " ORDER BY o.created_at DESC"

        if 'limit' in search_params:
            query += f" LIMIT ${param_index}"
            params.append(search_params['limit'])

        async with self.db.pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
            return [self._to_order(row) for row in rows]

    async def _load(self, conn, order_id: int) -> Optional[Order]:
        row = await conn.fetchrow(ORDER_QUERY + " WHERE o.order_id = $1", order_id)
        return self._to_order(row) if row else None

    async def _insert_items(self, conn, order_id: int, order: Order):
        await conn.executemany("""
            INSERT INTO order_items (
                order_id, position, product_id, name, quantity, unit_price
            ) VALUES ($1, $2, $3, $4, $5, $6)
        """, [
            (order_id, position, item.product_id, item.name, item.quantity, item.unit_price)
            for position, item in enumerate(order.items)
        ])

    async def _insert_history(self, conn, order_id: int, entries: List[StatusHistoryEntry]):
        if not entries:
            return
        await conn.executemany("""
            INSERT INTO order_status_history (
                order_id, status, note, actor, created_at
            ) VALUES ($1, $2, $3, $4, $5)
        """, [
            (order_id, entry.status.value, entry.note, entry.actor, entry.timestamp)
            for entry in entries
        ])

    @staticmethod
    def _to_order(row) -> Order:
        data = dict(row)
        items = data.pop('items')
        history = data.pop('status_history')
        address = data.pop('shipping_address')

        coupon = None
        code = data.pop('coupon_code')
        coupon_type = data.pop('coupon_type')
        coupon_value = data.pop('coupon_value')
        discount = data.pop('discount_amount')
        if code:
            coupon = AppliedCoupon(code=code, type=coupon_type, value=coupon_value, discount=discount)

        return Order(
            **data,
            items=json.loads(items) if items else [],
            status_history=json.loads(history) if history else [],
            shipping_address=json.loads(address) if address else None,
            coupon=coupon
        )
