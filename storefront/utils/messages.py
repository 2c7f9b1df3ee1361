from ..models.order import Order, OrderStatus, StatusChange
from ..models.user import User
from ..utils.formatters import format_price, format_datetime, order_number

class Messages:
    STATUS_EMOJI = {
        OrderStatus.PENDING: "⏳",
        OrderStatus.CONFIRMED: "✅",
        OrderStatus.PROCESSING: "🛠",
        OrderStatus.SHIPPED: "🚚",
        OrderStatus.DELIVERED: "📦",
        OrderStatus.CANCELLED: "❌"
    }

    @staticmethod
    def format_order(order: Order) -> str:
        """Order summary block"""
        items_text = "\n".join([
            f"- {item.quantity}x {item.name}: {format_price(item.unit_price)}"
            for item in order.items
        ])

        lines = [
            f"🛍 Order {order_number(order.order_id)}",
            "------------------",
            items_text,
            "------------------",
        ]
        if order.coupon:
            lines.append(f"🏷 Coupon {order.coupon.code}: -{format_price(order.coupon.discount)}")
        if order.free_shipping:
            lines.append("🚚 Free shipping")
        lines.extend([
            f"💰 Total: {format_price(order.total_price)}",
            f"📊 Status: {Messages.STATUS_EMOJI[order.status]} {order.status.value}",
            f"🕒 Date: {format_datetime(order.created_at)}",
        ])
        return "\n".join(lines)

    @staticmethod
    def order_created(order: Order, user: User) -> str:
        return (
            f"Hi {user.display_name}, thanks for your order!\n\n"
            f"{Messages.format_order(order)}"
        )

    @staticmethod
    def status_changed(order: Order, user: User, status_change: StatusChange) -> str:
        text = (
            f"Hi {user.display_name}, your order {order_number(order.order_id)} is now "
            f"{Messages.STATUS_EMOJI[status_change.new_status]} {status_change.new_status.value} "
            f"(was {status_change.previous_status.value})."
        )
        if status_change.note:
            text += f"\n\n📝 {status_change.note}"
        return text
