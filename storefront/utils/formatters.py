from datetime import datetime
import pytz
from decimal import Decimal
from ..config import Config

CURRENCY_SYMBOLS = {"USD": "$", "EUR": "€", "GBP": "£"}

def format_price(amount: Decimal) -> str:
    """Format an amount in the store currency"""
    symbol = CURRENCY_SYMBOLS.get(Config.CURRENCY)
    if symbol:
        return f"{symbol}{amount:,.2f}"
    return f"{amount:,.2f} {Config.CURRENCY}"

def format_datetime(dt: datetime) -> str:
    """Format a timestamp in the store timezone"""
    store_tz = pytz.timezone(Config.TIMEZONE)
    if dt.tzinfo is None:
        dt = pytz.utc.localize(dt)
    local_time = dt.astimezone(store_tz)
    return local_time.strftime("%Y-%m-%d %H:%M:%S")

def order_number(order_id: int) -> str:
    """Customer-facing order number"""
    return f"#{order_id:08d}"
