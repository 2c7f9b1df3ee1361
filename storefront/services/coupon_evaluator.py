"""Coupon eligibility and discount computation.

Pure functions over coupon and item data; nothing here touches storage.
Eligibility rules run in a fixed order and the first failing rule is the
reported reason.
"""
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Sequence

from ..models.checkout import CouponEvaluation, CouponRejection, ResolvedItem
from ..models.coupon import Coupon, CouponType
from ..utils.formatters import format_price

CENT = Decimal("0.01")


def quantize_money(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def check_eligibility(coupon: Coupon, items: Sequence[ResolvedItem], subtotal: Decimal,
                      prior_usage_for_user: int = 0,
                      now: Optional[datetime] = None) -> Optional[tuple]:
    """Return (reason, message) for the first failing rule, or None when eligible."""
    now = _aware(now or datetime.now(timezone.utc))

    if not coupon.is_active:
        return CouponRejection.DISABLED, "Coupon is disabled"
    if now < _aware(coupon.start_date):
        return CouponRejection.NOT_STARTED, "Coupon is not active yet"
    if coupon.end_date is not None and now > _aware(coupon.end_date):
        return CouponRejection.EXPIRED, "Coupon has expired"

    if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
        return CouponRejection.USAGE_LIMIT_REACHED, "Coupon usage limit exceeded"

    if coupon.user_limit is not None and prior_usage_for_user >= coupon.user_limit:
        return CouponRejection.USER_LIMIT_REACHED, "You have already used this coupon"

    if subtotal < coupon.minimum_amount:
        return (
            CouponRejection.MINIMUM_NOT_MET,
            f"Minimum order amount of {format_price(coupon.minimum_amount)} required to use this coupon"
        )

    product_ids = {item.product.product_id for item in items}
    if product_ids.intersection(coupon.excluded_products):
        return CouponRejection.EXCLUDED_PRODUCT, "Coupon not applicable to some items in your cart"

    if coupon.applicable_products or coupon.applicable_categories:
        applicable = any(
            item.product.product_id in coupon.applicable_products
            or (item.product.category is not None
                and item.product.category in coupon.applicable_categories)
            for item in items
        )
        if not applicable:
            return CouponRejection.NOT_APPLICABLE, "Coupon not applicable to items in your cart"

    return None


def compute_discount(coupon: Coupon, items: Sequence[ResolvedItem], subtotal: Decimal) -> Decimal:
    """Discount against the item subtotal, clamped to [0, subtotal]."""
    if coupon.type == CouponType.PERCENTAGE:
        discount = subtotal * coupon.value / 100
        if coupon.maximum_discount is not None:
            discount = min(discount, coupon.maximum_discount)

    elif coupon.type == CouponType.FIXED_AMOUNT:
        discount = min(coupon.value, subtotal)

    elif coupon.type == CouponType.BUY_ONE_GET_ONE:
        # One unit of the cheapest line, whatever the quantities
        if len(items) < 2:
            discount = Decimal(0)
        else:
            cheapest = sorted(items, key=lambda item: item.unit_price)[0]
            discount = cheapest.unit_price

    else:  # free shipping waives shipping, not item cost
        discount = Decimal(0)

    return min(max(quantize_money(discount), Decimal(0)), subtotal)


def evaluate_coupon(coupon: Coupon, items: Sequence[ResolvedItem], subtotal: Decimal,
                    prior_usage_for_user: int = 0,
                    now: Optional[datetime] = None) -> CouponEvaluation:
    """Check a coupon against an order and compute its discount."""
    failure = check_eligibility(coupon, items, subtotal, prior_usage_for_user, now)
    if failure:
        reason, message = failure
        return CouponEvaluation(
            eligible=False,
            reason=reason,
            message=message,
            final_total=subtotal
        )

    discount = compute_discount(coupon, items, subtotal)
    return CouponEvaluation(
        eligible=True,
        discount=discount,
        final_total=max(subtotal - discount, Decimal(0)),
        free_shipping=coupon.type == CouponType.FREE_SHIPPING
    )
