import os
import logging
from decimal import Decimal
from pathlib import Path
from dotenv import load_dotenv
from typing import List

# Load environment variables
load_dotenv()

# Base directory of the project
BASE_DIR = Path(__file__).resolve().parent.parent

class Config:
    """Configuration settings for the storefront backend"""

    # Database settings
    DATABASE_URL: str = os.getenv("DATABASE_URL")
    if not DATABASE_URL:
        raise ValueError("No DATABASE_URL set in environment")

    DB_POOL_MIN_SIZE: int = int(os.getenv("DB_POOL_MIN_SIZE", "2"))
    DB_POOL_MAX_SIZE: int = int(os.getenv("DB_POOL_MAX_SIZE", "10"))
    # Seconds before a single query is abandoned
    DB_COMMAND_TIMEOUT: float = float(os.getenv("DB_COMMAND_TIMEOUT", "10"))

    # Notification settings (empty token disables Telegram delivery)
    TELEGRAM_TOKEN: str = os.getenv("TELEGRAM_TOKEN", "")
    NOTIFICATION_TIMEOUT: float = float(os.getenv("NOTIFICATION_TIMEOUT", "5"))

    # Admin settings
    ADMIN_IDS: List[int] = [
        int(id_) for id_ in os.getenv("ADMIN_IDS", "").split(",")
        if id_.strip().isdigit()
    ]

    # Pricing settings
    CURRENCY: str = os.getenv("CURRENCY", "USD")
    # Relative tolerance for client-supplied prices and totals (0.01 == 1%)
    PRICE_TOLERANCE: Decimal = Decimal(os.getenv("PRICE_TOLERANCE", "0.01"))

    # Other settings
    TIMEZONE: str = os.getenv("TZ", "UTC")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Paths
    LOG_DIR = Path(os.getenv("LOG_DIR", str(BASE_DIR / "logs")))

def setup_logging():
    """Configure logging settings"""
    log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    Config.LOG_DIR.mkdir(parents=True, exist_ok=True)
    log_file = Config.LOG_DIR / "storefront.log"

    logging.basicConfig(
        level=getattr(logging, Config.LOG_LEVEL),
        format=log_format,
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )
