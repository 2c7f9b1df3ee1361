import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional, Set

from telegram import Bot
from telegram.error import TelegramError

from ..config import Config
from ..models.order import Order, StatusChange
from ..models.user import User
from ..utils.formatters import format_price, order_number
from ..utils.messages import Messages
from .interfaces import NotificationSink, UserDirectory

class TelegramNotifier(NotificationSink):
    """Sends order messages to the customer's Telegram chat"""

    def __init__(self, token: str, admin_ids: Optional[Iterable[int]] = None, bot: Optional[Bot] = None):
        self.bot = bot or Bot(token)
        self.admin_ids = list(Config.ADMIN_IDS if admin_ids is None else admin_ids)
        self.logger = logging.getLogger(__name__)

    async def start(self):
        await self.bot.initialize()

    async def stop(self):
        await self.bot.shutdown()

    async def order_created(self, order: Order, user: User) -> None:
        await self.bot.send_message(
            chat_id=user.user_id,
            text=Messages.order_created(order, user)
        )

        for admin_id in self.admin_ids:
            try:
                await self.bot.send_message(
                    chat_id=admin_id,
                    text=(
                        f"🆕 New order {order_number(order.order_id)} from {user.display_name}: "
                        f"{format_price(order.total_price)}"
                    )
                )
            except TelegramError as e:
                self.logger.warning(f"Could not notify admin {admin_id}: {e}")

    async def status_changed(self, order: Order, user: User, status_change: StatusChange) -> None:
        await self.bot.send_message(
            chat_id=user.user_id,
            text=Messages.status_changed(order, user, status_change)
        )

class LoggingNotifier(NotificationSink):
    """Writes notifications to the log; used when no bot token is configured"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    async def order_created(self, order: Order, user: User) -> None:
        self.logger.info(f"Notify {user.user_id}: {Messages.order_created(order, user)}")

    async def status_changed(self, order: Order, user: User, status_change: StatusChange) -> None:
        self.logger.info(f"Notify {user.user_id}: {Messages.status_changed(order, user, status_change)}")

class NotificationDispatcher:
    """Runs notification deliveries as background tasks.

    Callers never wait on delivery and delivery errors never reach them;
    failures and timeouts are logged.
    """

    def __init__(self, sink: NotificationSink, users: UserDirectory, timeout: Optional[float] = None):
        self.sink = sink
        self.users = users
        self.timeout = Config.NOTIFICATION_TIMEOUT if timeout is None else timeout
        self.logger = logging.getLogger(__name__)
        self._tasks: Set[asyncio.Task] = set()

    def order_created(self, order: Order):
        self._schedule(
            "order_created", order,
            lambda user: self.sink.order_created(order, user)
        )

    def status_changed(self, order: Order, status_change: StatusChange):
        self._schedule(
            "status_changed", order,
            lambda user: self.sink.status_changed(order, user, status_change)
        )

    def _schedule(self, event: str, order: Order, send: Callable[[User], Awaitable[None]]):
        task = asyncio.get_running_loop().create_task(self._deliver(event, order, send))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, event: str, order: Order, send: Callable[[User], Awaitable[None]]):
        try:
            user = await self.users.get_user(order.user_id)
            if user is None:
                self.logger.warning(f"Skipping {event} for order {order.order_id}: user {order.user_id} not found")
                return
            await asyncio.wait_for(send(user), timeout=self.timeout)
        except asyncio.TimeoutError:
            self.logger.error(f"Timed out sending {event} for order {order.order_id}")
        except Exception as e:
            self.logger.error(f"Failed sending {event} for order {order.order_id}: {e}", exc_info=True)

    async def drain(self):
        """Wait for every pending delivery"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
