import logging
from typing import Optional
from ..errors import NotFoundError, StockError, ValidationError
from ..models.cart import Cart, CartItem, CartSummary, OutOfStockItem
from ..models.checkout import ItemProblem, ProblemReason
from ..models.product import Product
from .interfaces import CartStore, ProductLookup

class CartService(CartStore):
    """One cart per user; stock is checked on every change but not reserved"""

    def __init__(self, db, products: ProductLookup):
        self.db = db
        self.products = products
        self.logger = logging.getLogger(__name__)

    async def get_by_user(self, user_id: int) -> Cart:
        """The user's cart, created empty on first use"""
        async with self.db.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO carts (user_id)
                VALUES ($1)
                ON CONFLICT (user_id) DO NOTHING
            """, user_id)

            cart = await conn.fetchrow("""
                SELECT * FROM carts WHERE user_id = $1
            """, user_id)
            items = await conn.fetch("""
                SELECT product_id, quantity, price
                FROM cart_items
                WHERE cart_id = $1
                ORDER BY position
            """, cart['cart_id'])

            return Cart(**dict(cart), items=[CartItem(**dict(item)) for item in items])

    async def add_item(self, user_id: int, product_id: int, quantity: int = 1) -> Cart:
        """Add a product, or increase its quantity when already in the cart"""
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1", {"quantity": quantity})

        product = await self._orderable_product(product_id)
        cart = await self.get_by_user(user_id)

        existing = cart.find_item(product_id)
        new_quantity = quantity + (existing.quantity if existing else 0)
        self._check_stock(product, new_quantity)

        async with self.db.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO cart_items (cart_id, product_id, quantity, price)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (cart_id, product_id)
                DO UPDATE SET quantity = EXCLUDED.quantity
            """, cart.cart_id, product_id, new_quantity, product.price)
            await self._touch(conn, cart.cart_id)

        return await self.get_by_user(user_id)

    async def update_item(self, user_id: int, product_id: int, quantity: int) -> Cart:
        """Set a line's quantity and refresh its price"""
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1", {"quantity": quantity})

        product = await self._orderable_product(product_id)
        self._check_stock(product, quantity)
        cart = await self.get_by_user(user_id)

        async with self.db.pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE cart_items
                SET quantity = $1, price = $2
                WHERE cart_id = $3 AND product_id = $4
            """, quantity, product.price, cart.cart_id, product_id)

            if result != "UPDATE 1":
                raise NotFoundError("Item not found in cart", {"product_id": product_id})
            await self._touch(conn, cart.cart_id)

        return await self.get_by_user(user_id)

    async def remove_item(self, user_id: int, product_id: int) -> Cart:
        cart = await self.get_by_user(user_id)
        async with self.db.pool.acquire() as conn:
            await conn.execute("""
                DELETE FROM cart_items
                WHERE cart_id = $1 AND product_id = $2
            """, cart.cart_id, product_id)
            await self._touch(conn, cart.cart_id)

        return await self.get_by_user(user_id)

    async def clear(self, cart_id: int) -> None:
        """Empty a cart; the cart itself is kept"""
        async with self.db.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("""
                    DELETE FROM cart_items WHERE cart_id = $1
                """, cart_id)
                await self._touch(conn, cart_id)

    async def summary(self, user_id: int) -> CartSummary:
        """Split the cart into lines that can be bought now and lines that cannot"""
        cart = await self.get_by_user(user_id)

        available = []
        out_of_stock = []
        for item in cart.items:
            product = await self.products.find_by_id(item.product_id)
            stock = product.stock if product is not None and product.is_active else 0
            if item.quantity > stock:
                out_of_stock.append(OutOfStockItem(
                    product_id=item.product_id,
                    name=product.name if product else str(item.product_id),
                    requested=item.quantity,
                    available=stock
                ))
            else:
                available.append(item)

        return CartSummary(
            items=available,
            total_items=sum(item.quantity for item in available),
            total_price=sum(item.price * item.quantity for item in available),
            out_of_stock_items=out_of_stock
        )

    async def _orderable_product(self, product_id: int) -> Product:
        product = await self.products.find_by_id(product_id)
        if product is None or not product.is_active:
            raise NotFoundError("Product not found", {"product_id": product_id})
        return product

    @staticmethod
    def _check_stock(product: Product, quantity: int):
        if quantity > product.stock:
            raise StockError([ItemProblem(
                index=0,
                reference=str(product.product_id),
                reason=ProblemReason.INSUFFICIENT_STOCK,
                product_id=product.product_id,
                requested=quantity,
                available=product.stock
            )])

    @staticmethod
    async def _touch(conn, cart_id: int):
        await conn.execute("""
            UPDATE carts SET updated_at = CURRENT_TIMESTAMP WHERE cart_id = $1
        """, cart_id)
