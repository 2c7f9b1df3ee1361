import logging
import re
from typing import Dict, List, Optional, Any
from ..errors import NotFoundError, ValidationError
from ..models.coupon import Coupon, CouponType
from .interfaces import CouponStore

CODE_PATTERN = re.compile(r"^[A-Z0-9]{6,12}$")

UPDATABLE_FIELDS = (
    'name', 'description', 'type', 'value', 'minimum_amount', 'maximum_discount',
    'usage_limit', 'user_limit', 'applicable_categories', 'applicable_products',
    'excluded_products', 'start_date', 'end_date', 'is_active'
)

class CouponService(CouponStore):
    """Coupon persistence and administration"""

    def __init__(self, db):
        self.db = db
        self.logger = logging.getLogger(__name__)

    async def create_coupon(self, coupon_data: Dict[str, Any]) -> Coupon:
        """Create a coupon after checking its code and type"""
        code = str(coupon_data.get('code', '')).strip().upper()
        if not CODE_PATTERN.match(code):
            raise ValidationError(
                "Coupon code must be 6-12 characters, uppercase letters and numbers only",
                {"code": code}
            )
        coupon_type = self._coupon_type(coupon_data.get('type'))

        async with self.db.pool.acquire() as conn:
            async with conn.transaction():
                exists = await conn.fetchval("""
                    SELECT 1 FROM coupons WHERE code = $1
                """, code)
                if exists:
                    raise ValidationError("Coupon code already exists", {"code": code})

                row = await conn.fetchrow("""
                    INSERT INTO coupons (
                        code, name, description, type, value,
                        minimum_amount, maximum_discount, usage_limit, user_limit,
                        applicable_categories, applicable_products, excluded_products,
                        start_date, end_date, is_active, created_by
                    ) VALUES (
                        $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12,
                        COALESCE($13, CURRENT_TIMESTAMP), $14, TRUE, $15
                    )
                    RETURNING *
                """,
                    code,
                    coupon_data['name'],
                    coupon_data.get('description'),
                    coupon_type.value,
                    coupon_data['value'],
                    coupon_data.get('minimum_amount') or 0,
                    coupon_data.get('maximum_discount'),
                    coupon_data.get('usage_limit'),
                    coupon_data.get('user_limit') or 1,
                    coupon_data.get('applicable_categories') or [],
                    coupon_data.get('applicable_products') or [],
                    coupon_data.get('excluded_products') or [],
                    coupon_data.get('start_date'),
                    coupon_data.get('end_date'),
                    coupon_data.get('created_by')
                )
                self.logger.info(f"Coupon {code} created")
                return Coupon(**dict(row))

    async def get_coupon(self, coupon_id: int) -> Optional[Coupon]:
        async with self.db.pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT * FROM coupons WHERE coupon_id = $1
            """, coupon_id)
            return Coupon(**dict(row)) if row else None

    async def find_active_by_code(self, code: str) -> Optional[Coupon]:
        async with self.db.pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT * FROM coupons
                WHERE code = $1 AND is_active = true
            """, code.strip().upper())
            return Coupon(**dict(row)) if row else None

    async def count_user_usage(self, coupon_id: int, user_id: int) -> int:
        async with self.db.pool.acquire() as conn:
            return await conn.fetchval("""
                SELECT COUNT(*) FROM coupon_usage
                WHERE coupon_id = $1 AND user_id = $2
            """, coupon_id, user_id)

    async def increment_usage(self, coupon_id: int, user_id: int, order_id: int) -> None:
        async with self.db.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("""
                    UPDATE coupons
                    SET usage_count = usage_count + 1
                    WHERE coupon_id = $1
                """, coupon_id)

                await conn.execute("""
                    INSERT INTO coupon_usage (
                        coupon_id, user_id, order_id, used_at
                    ) VALUES ($1, $2, $3, NOW())
                """, coupon_id, user_id, order_id)

    async def release_usage(self, coupon_id: int, order_id: int) -> None:
        async with self.db.pool.acquire() as conn:
            async with conn.transaction():
                result = await conn.execute("""
                    DELETE FROM coupon_usage
                    WHERE coupon_id = $1 AND order_id = $2
                """, coupon_id, order_id)

                if result == "DELETE 1":
                    await conn.execute("""
                        UPDATE coupons
                        SET usage_count = usage_count - 1
                        WHERE coupon_id = $1 AND usage_count > 0
                    """, coupon_id)

    async def get_active_coupons(self, limit: int = 20) -> List[Coupon]:
        """Coupons currently inside their active window"""
        async with self.db.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT *
                FROM coupons
                WHERE is_active = true
                AND start_date <= NOW()
                AND (end_date IS NULL OR end_date >= NOW())
                AND (usage_limit IS NULL OR usage_count < usage_limit)
                ORDER BY created_at DESC
                LIMIT $1
            """, limit)
            return [Coupon(**dict(row)) for row in rows]

    async def update_coupon(self, coupon_id: int, update_data: Dict[str, Any]) -> Coupon:
        """Update the given fields of a coupon"""
        unknown = set(update_data) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError("Unknown coupon fields", {"fields": sorted(unknown)})
        if 'type' in update_data:
            update_data = {**update_data, 'type': self._coupon_type(update_data['type']).value}

        query_parts = []
        params = []
        param_count = 1

        for key, value in update_data.items():
            query_parts.append(f"{key} = ${param_count}")
            params.append(value)
            param_count += 1

        if not query_parts:
            raise ValidationError("Nothing to update")

        params.append(coupon_id)
        query = f"""
            UPDATE coupons
            SET {', '.join(query_parts)}, updated_at = NOW()
            WHERE coupon_id = ${param_count}
            RETURNING *
        """

        async with self.db.pool.acquire() as conn:
            row = await conn.fetchrow(query, *params)
            if not row:
                raise NotFoundError(f"Coupon {coupon_id} not found", {"coupon_id": coupon_id})
            return Coupon(**dict(row))

    async def deactivate_coupon(self, coupon_id: int) -> bool:
        async with self.db.pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE coupons
                SET is_active = false, updated_at = NOW()
                WHERE coupon_id = $1
            """, coupon_id)
            return result == "UPDATE 1"

    async def get_usage_stats(self, coupon_id: int) -> Dict[str, Any]:
        """Usage totals of a coupon"""
        async with self.db.pool.acquire() as conn:
            stats = await conn.fetchrow("""
                SELECT
                    COUNT(*) as total_usage,
                    COALESCE(SUM(o.subtotal), 0) as total_purchase_amount,
                    COALESCE(SUM(o.discount_amount), 0) as total_discount_amount,
                    COUNT(DISTINCT cu.user_id) as unique_users
                FROM coupon_usage cu
                JOIN orders o ON o.order_id = cu.order_id
                WHERE cu.coupon_id = $1
            """, coupon_id)
            return dict(stats)

    @staticmethod
    def _coupon_type(value) -> CouponType:
        try:
            return CouponType(value)
        except ValueError:
            raise ValidationError(f"Unknown coupon type: {value}", {"type": value})
