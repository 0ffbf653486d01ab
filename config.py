"""Configuration management for the kWh marketplace bot"""

import os
import logging
from decimal import Decimal
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _get_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _get_int(name: str) -> Optional[int]:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        logger.error(f"❌ {name} must be an integer, got {value!r}")
        return None


class Config:
    """Application configuration"""

    # Environment detection: ENVIRONMENT takes absolute priority
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    # Bot token: TELEGRAM_BOT_TOKEN > environment-specific > generic fallback
    TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN")
    DEVELOPMENT_BOT_TOKEN = os.getenv("DEVELOPMENT_BOT_TOKEN")
    GENERIC_BOT_TOKEN = os.getenv("BOT_TOKEN")

    if IS_PRODUCTION:
        BOT_TOKEN = TELEGRAM_BOT_TOKEN or GENERIC_BOT_TOKEN
    else:
        BOT_TOKEN = DEVELOPMENT_BOT_TOKEN or TELEGRAM_BOT_TOKEN or GENERIC_BOT_TOKEN

    BOT_USERNAME = os.getenv("BOT_USERNAME", "kwh_market_bot")

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///kwh_market.db")
    DATABASE_ECHO = _get_bool("DATABASE_ECHO")

    # Admin identity (receives donations, pays with donated credit)
    ADMIN_USER_ID = _get_int("ADMIN_USER_ID")

    # Marketplace groups where announcements are published
    SELL_GROUP_ID = _get_int("SELL_GROUP_ID")
    SELL_TOPIC_ID = _get_int("SELL_TOPIC_ID")
    BUY_GROUP_ID = _get_int("BUY_GROUP_ID")
    BUY_TOPIC_ID = _get_int("BUY_TOPIC_ID")

    # Offer lifecycle
    OFFER_EXPIRY_HOURS = int(os.getenv("OFFER_EXPIRY_HOURS", "24"))

    # Balance floor policy: False clamps debits at zero, True lets balances go negative
    ALLOW_NEGATIVE_BALANCE = _get_bool("ALLOW_NEGATIVE_BALANCE", False)

    # Quick donation offered to sellers after a completed charge
    FIXED_DONATION_KWH = Decimal(os.getenv("FIXED_DONATION_KWH", "2"))

    # Reputation thresholds
    TRUSTED_SELLER_MIN_PERCENTAGE = int(os.getenv("TRUSTED_SELLER_MIN_PERCENTAGE", "90"))
    TRUSTED_SELLER_MIN_RATINGS = int(os.getenv("TRUSTED_SELLER_MIN_RATINGS", "5"))
    TRUSTED_WHITELISTED_MIN_POSITIVE = int(os.getenv("TRUSTED_WHITELISTED_MIN_POSITIVE", "3"))

    # Rate limiting for inbound actions
    RATE_LIMIT_MAX_ACTIONS = int(os.getenv("RATE_LIMIT_MAX_ACTIONS", "30"))
    RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    @staticmethod
    def is_admin(user_id: Optional[int]) -> bool:
        """Check whether a user is the configured admin"""
        return Config.ADMIN_USER_ID is not None and user_id == Config.ADMIN_USER_ID

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Bot Environment Configuration:")
        logger.info(f"   Environment: {Config.CURRENT_ENVIRONMENT.upper()}")
        logger.info(f"   Bot Username: @{Config.BOT_USERNAME}")
        logger.info(f"   Database: {Config.DATABASE_URL.split('://')[0]}")
        logger.info(f"   Admin configured: {'✅' if Config.ADMIN_USER_ID else '❌'}")
        logger.info(f"   Allow negative balance: {Config.ALLOW_NEGATIVE_BALANCE}")
        logger.info(f"   Offer expiry: {Config.OFFER_EXPIRY_HOURS}h")

    @staticmethod
    def validate_bot_configuration():
        """Validate bot configuration and provide helpful error messages"""
        if not Config.BOT_TOKEN:
            error_msg = f"""
❌ Bot token configuration error for {Config.CURRENT_ENVIRONMENT} environment!

Required environment variables:
  • For production: TELEGRAM_BOT_TOKEN (recommended) or BOT_TOKEN (fallback)
  • For development: DEVELOPMENT_BOT_TOKEN (recommended) or BOT_TOKEN (fallback)
"""
            logger.critical(error_msg)
            raise ValueError("Bot token not configured for current environment")

        if Config.ADMIN_USER_ID is None:
            logger.warning("⚠️ ADMIN_USER_ID not set - donations and admin charges are disabled")

        return True
