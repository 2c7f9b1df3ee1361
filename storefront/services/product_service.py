import logging
from typing import List, Dict, Optional, Any
from decimal import Decimal
from ..models.product import Product, ProductStatus
from .interfaces import ProductLookup, StockLedger

class ProductService(ProductLookup):
    def __init__(self, db):
        self.db = db
        self.logger = logging.getLogger(__name__)

    async def add_product(self, product_data: Dict[str, Any]) -> int:
        """Create a product and return its id"""
        async with self.db.pool.acquire() as conn:
            product_id = await conn.fetchval("""
                INSERT INTO products (
                    seller_id, name, description, price,
                    stock, status, category, sku
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                RETURNING product_id
            """,
                product_data['seller_id'],
                product_data['name'],
                product_data.get('description'),
                product_data['price'],
                product_data.get('stock', 0),
                product_data.get('status', ProductStatus.ACTIVE.value),
                product_data.get('category'),
                product_data.get('sku')
            )
            return product_id

    async def update_product(self, product_id: int, product_data: Dict[str, Any]) -> bool:
        """Update catalogue fields; stock is only changed through StockService"""
        async with self.db.pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE products
                SET name = $1, description = $2, price = $3,
                    status = $4, category = $5, sku = $6,
                    updated_at = CURRENT_TIMESTAMP
                WHERE product_id = $7
            """,
                product_data['name'],
                product_data.get('description'),
                product_data['price'],
                product_data.get('status', ProductStatus.ACTIVE.value),
                product_data.get('category'),
                product_data.get('sku'),
                product_id
            )
            return result == "UPDATE 1"

    async def find_by_id(self, product_id: int) -> Optional[Product]:
        async with self.db.pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT * FROM products WHERE product_id = $1
            """, product_id)
            return Product(**dict(row)) if row else None

    async def find_by_name(self, name: str) -> Optional[Product]:
        async with self.db.pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT * FROM products
                WHERE LOWER(name) = LOWER($1) AND status = 'active'
                ORDER BY product_id
                LIMIT 1
            """, name)
            return Product(**dict(row)) if row else None

    async def find_by_name_like(self, pattern: str) -> Optional[Product]:
        async with self.db.pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT * FROM products
                WHERE name ILIKE '%' || $1 || '%' AND status = 'active'
                ORDER BY product_id
                LIMIT 1
            """, pattern)
            return Product(**dict(row)) if row else None

    async def find_by_keywords_and_price(self, keywords: List[str], min_price: Decimal,
                                         max_price: Decimal) -> Optional[Product]:
        if not keywords:
            return None
        patterns = [f"%{keyword}%" for keyword in keywords]
        async with self.db.pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT * FROM products
                WHERE name ILIKE ANY($1::text[])
                  AND price BETWEEN $2 AND $3
                  AND status = 'active'
                ORDER BY product_id
                LIMIT 1
            """, patterns, min_price, max_price)
            return Product(**dict(row)) if row else None

    async def find_by_sku(self, sku: str) -> Optional[Product]:
        async with self.db.pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT * FROM products WHERE sku = $1
            """, sku)
            return Product(**dict(row)) if row else None

class StockService(StockLedger):
    """Stock counters, changed only by single conditional statements"""

    def __init__(self, db):
        self.db = db
        self.logger = logging.getLogger(__name__)

    async def try_reserve(self, product_id: int, quantity: int) -> bool:
        async with self.db.pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE products
                SET stock = stock - $1,
                    updated_at = CURRENT_TIMESTAMP
                WHERE product_id = $2 AND stock >= $1
            """, quantity, product_id)
            return result == "UPDATE 1"

    async def release(self, product_id: int, quantity: int) -> None:
        async with self.db.pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE products
                SET stock = stock + $1,
                    updated_at = CURRENT_TIMESTAMP
                WHERE product_id = $2
            """, quantity, product_id)
            if result != "UPDATE 1":
                self.logger.error(f"Releasing {quantity} units of missing product {product_id}")

