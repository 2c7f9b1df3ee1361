import logging
from typing import Optional
from .config import Config
from .database.database import Database
from .services import (
    CartService,
    CheckoutService,
    CouponService,
    ItemResolver,
    LoggingNotifier,
    NotificationDispatcher,
    OrderLifecycleService,
    OrderService,
    ProductService,
    StockService,
    TelegramNotifier,
    UserService
)
from .services.interfaces import NotificationSink

class Storefront:
    def __init__(self, db: Optional[Database] = None, notification_sink: Optional[NotificationSink] = None):
        """Wire every service onto one database"""
        self.db = db or Database()
        self.logger = logging.getLogger(__name__)

        if notification_sink is None:
            if Config.TELEGRAM_TOKEN:
                notification_sink = TelegramNotifier(Config.TELEGRAM_TOKEN)
            else:
                self.logger.warning("No TELEGRAM_TOKEN set, notifications are only logged")
                notification_sink = LoggingNotifier()
        self.notification_sink = notification_sink

        self.products = ProductService(self.db)
        self.stock = StockService(self.db)
        self.coupons = CouponService(self.db)
        self.carts = CartService(self.db, self.products)
        self.orders = OrderService(self.db)
        self.users = UserService(self.db)

        self.notifier = NotificationDispatcher(self.notification_sink, self.users)
        self.resolver = ItemResolver(self.products)
        self.checkout = CheckoutService(
            self.resolver, self.stock, self.coupons, self.carts, self.orders, self.notifier
        )
        self.lifecycle = OrderLifecycleService(
            self.orders, self.stock, self.notifier, products=self.products
        )

    async def start(self):
        await self.db.connect()
        await self.notification_sink.start()

    async def stop(self):
        await self.notifier.drain()
        await self.notification_sink.stop()
        await self.db.close()
