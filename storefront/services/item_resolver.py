import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from ..config import Config
from ..errors import ProductNotFoundError, StockError, ValidationError
from ..models.checkout import ItemProblem, ItemRequest, ProblemReason, ResolvedItem, ResolvedItems
from ..models.product import Product
from .interfaces import ProductLookup

class ItemResolver:
    """Turns caller-supplied item entries into priced, stock-checked items.

    Resolution is all-or-nothing: every entry is checked and, if any fails,
    the whole list of problems is raised at once. Stock is only read here;
    the authoritative check is the reservation made at checkout.
    """

    def __init__(self, products: ProductLookup, price_tolerance: Optional[Decimal] = None):
        self.products = products
        self.price_tolerance = Config.PRICE_TOLERANCE if price_tolerance is None else price_tolerance
        self.logger = logging.getLogger(__name__)

    def parse(self, entries: List[Dict[str, Any]]) -> List[ItemRequest]:
        """Validate raw entries, reporting every malformed one"""
        if not entries:
            raise ValidationError("At least one item is required")

        requests = []
        errors = []
        for index, entry in enumerate(entries):
            try:
                requests.append(ItemRequest.model_validate(entry))
            except PydanticValidationError as e:
                errors.append({
                    "index": index,
                    "errors": e.errors(include_url=False, include_context=False, include_input=False)
                })

        if errors:
            raise ValidationError("Invalid items", {"items": errors})
        return requests

    async def resolve(self, entries: List[Dict[str, Any]]) -> ResolvedItems:
        requests = self.parse(entries)

        problems: List[ItemProblem] = []
        # product_id -> [first index, product, combined quantity]
        lines: Dict[int, list] = {}

        for index, request in enumerate(requests):
            product = await self.lookup(request)

            if product is None:
                problems.append(ItemProblem(
                    index=index,
                    reference=request.reference,
                    reason=ProblemReason.NOT_FOUND,
                    requested=request.quantity
                ))
                continue

            if not product.is_active:
                problems.append(ItemProblem(
                    index=index,
                    reference=request.reference,
                    reason=ProblemReason.UNAVAILABLE,
                    product_id=product.product_id,
                    requested=request.quantity,
                    available=0
                ))
                continue

            self._check_price(request, product)

            if product.product_id in lines:
                lines[product.product_id][2] += request.quantity
            else:
                lines[product.product_id] = [index, product, request.quantity]

        for index, product, quantity in lines.values():
            if quantity > product.stock:
                problems.append(ItemProblem(
                    index=index,
                    reference=str(product.product_id),
                    reason=ProblemReason.INSUFFICIENT_STOCK,
                    product_id=product.product_id,
                    requested=quantity,
                    available=product.stock
                ))

        if problems:
            problems.sort(key=lambda problem: problem.index)
            if any(p.reason == ProblemReason.NOT_FOUND for p in problems):
                raise ProductNotFoundError(problems)
            raise StockError(problems)

        items = [
            ResolvedItem(product=product, quantity=quantity, unit_price=product.price)
            for _, product, quantity in lines.values()
        ]
        subtotal = sum((item.total_price for item in items), Decimal(0))
        return ResolvedItems(items=items, subtotal=subtotal)

    async def lookup(self, request: ItemRequest) -> Optional[Product]:
        """Find the product an entry refers to"""
        if request.product_id is not None:
            return await self.products.find_by_id(request.product_id)

        product = None
        strategy = None
        if request.name:
            name = request.name.strip()
            product = await self.products.find_by_name(name)
            strategy = "exact name"
            if product is None:
                product = await self.products.find_by_name_like(name)
                strategy = "partial name"
            if product is None and request.expected_price is not None:
                low, high = self.price_window(request.expected_price)
                keywords = [word for word in name.lower().split() if len(word) >= 3]
                product = await self.products.find_by_keywords_and_price(keywords, low, high)
                strategy = "name and price"

        if product is None and request.sku:
            product = await self.products.find_by_sku(request.sku.strip())
            strategy = "sku"

        if product is not None:
            self.logger.warning(
                f"Item '{request.reference}' resolved by {strategy} to product "
                f"{product.product_id}; name and SKU lookups are deprecated, send product_id"
            )
        return product

    def price_window(self, price: Decimal) -> tuple:
        return price * (1 - self.price_tolerance), price * (1 + self.price_tolerance)

    def _check_price(self, request: ItemRequest, product: Product):
        if request.expected_price is None:
            return
        if not self.within_tolerance(request.expected_price, product.price):
            self.logger.warning(
                f"Price mismatch for product {product.product_id}: client sent "
                f"{request.expected_price}, current price {product.price} is used"
            )

    def within_tolerance(self, client_value: Decimal, server_value: Decimal) -> bool:
        return abs(Decimal(client_value) - server_value) <= server_value * self.price_tolerance
