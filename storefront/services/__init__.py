"""Storefront services"""
from .cart_service import CartService
from .checkout_service import CheckoutService
from .coupon_evaluator import evaluate_coupon
from .coupon_service import CouponService
from .item_resolver import ItemResolver
from .notification_service import LoggingNotifier, NotificationDispatcher, TelegramNotifier
from .order_lifecycle import FORWARD_TRANSITIONS, PERMISSIVE_TRANSITIONS, OrderLifecycleService
from .order_service import OrderService
from .product_service import ProductService, StockService
from .user_service import UserService

__all__ = [
    'CartService',
    'CheckoutService',
    'evaluate_coupon',
    'CouponService',
    'ItemResolver',
    'LoggingNotifier',
    'NotificationDispatcher',
    'TelegramNotifier',
    'FORWARD_TRANSITIONS',
    'PERMISSIVE_TRANSITIONS',
    'OrderLifecycleService',
    'OrderService',
    'ProductService',
    'StockService',
    'UserService'
]
