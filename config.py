"""Configuration management for the Doers contract escrow core"""

import os
import logging
from decimal import Decimal
from typing import Dict, Any

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower().strip() in ("1", "true", "yes", "on")


class Config:
    """Application configuration"""

    # Environment detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./doers_escrow.db")
    DATABASE_ECHO = _env_bool("DATABASE_ECHO")

    PLATFORM_CURRENCY = os.getenv("PLATFORM_CURRENCY", "ARS")

    # Commission rates (percent) by membership tier
    COMMISSION_RATE_FREE = Decimal(os.getenv("COMMISSION_RATE_FREE", "8"))
    COMMISSION_RATE_PRO = Decimal(os.getenv("COMMISSION_RATE_PRO", "3"))
    COMMISSION_RATE_SUPER_PRO = Decimal(os.getenv("COMMISSION_RATE_SUPER_PRO", "2"))
    COMMISSION_RATE_FAMILY = Decimal(os.getenv("COMMISSION_RATE_FAMILY", "0"))

    # Referral program
    REFERRAL_DISCOUNT_RATE = Decimal(os.getenv("REFERRAL_DISCOUNT_RATE", "3"))
    REFERRAL_DISCOUNT_DAYS = int(os.getenv("REFERRAL_DISCOUNT_DAYS", "30"))
    REFERRAL_FIRST_REWARD_FREE_CONTRACTS = int(os.getenv("REFERRAL_FIRST_REWARD_FREE_CONTRACTS", "2"))
    REFERRAL_SECOND_REWARD_FREE_CONTRACTS = int(os.getenv("REFERRAL_SECOND_REWARD_FREE_CONTRACTS", "1"))

    # Minimum commission (disabled unless explicitly enabled)
    COMMISSION_MIN_ENABLED = _env_bool("COMMISSION_MIN_ENABLED")
    COMMISSION_MIN_AMOUNT = Decimal(os.getenv("COMMISSION_MIN_AMOUNT", "1000"))

    # Smallest unit used when splitting a job budget between workers
    ALLOCATION_UNIT = Decimal(os.getenv("ALLOCATION_UNIT", "1"))

    # Scheduler timing
    AUTO_CONFIRM_GRACE_HOURS = int(os.getenv("AUTO_CONFIRM_GRACE_HOURS", "2"))
    AUTO_CONFIRM_INTERVAL_MINUTES = int(os.getenv("AUTO_CONFIRM_INTERVAL_MINUTES", "5"))
    AUTO_CONFIRM_BATCH_SIZE = int(os.getenv("AUTO_CONFIRM_BATCH_SIZE", "100"))
    CONFIRMATION_REMINDER_INTERVAL_MINUTES = int(os.getenv("CONFIRMATION_REMINDER_INTERVAL_MINUTES", "30"))
    NOTIFICATION_PROCESS_INTERVAL_MINUTES = int(os.getenv("NOTIFICATION_PROCESS_INTERVAL_MINUTES", "2"))
    NOTIFICATION_BATCH_SIZE = int(os.getenv("NOTIFICATION_BATCH_SIZE", "20"))
    NOTIFICATION_MAX_RETRIES = int(os.getenv("NOTIFICATION_MAX_RETRIES", "5"))
    REFERRAL_RESET_HOUR_UTC = int(os.getenv("REFERRAL_RESET_HOUR_UTC", "0"))

    # PayPal gateway
    PAYPAL_MODE = os.getenv("PAYPAL_MODE", "sandbox").lower().strip()
    PAYPAL_CLIENT_ID = os.getenv("PAYPAL_CLIENT_ID")
    PAYPAL_CLIENT_SECRET = os.getenv("PAYPAL_CLIENT_SECRET")
    PAYPAL_BASE_URL = os.getenv(
        "PAYPAL_BASE_URL",
        "https://api-m.paypal.com" if PAYPAL_MODE == "production" else "https://api-m.sandbox.paypal.com",
    )
    PAYPAL_TIMEOUT_SECONDS = int(os.getenv("PAYPAL_TIMEOUT_SECONDS", "30"))
    PAYPAL_WEBHOOK_PROVIDER = "paypal"

    # Outbound notification delivery
    NOTIFICATION_WEBHOOK_URL = os.getenv("NOTIFICATION_WEBHOOK_URL")
    NOTIFICATION_TIMEOUT_SECONDS = int(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "10"))

    @classmethod
    def tier_commission_rates(cls) -> Dict[str, Decimal]:
        """Default commission rate per membership tier value"""
        return {
            "free": cls.COMMISSION_RATE_FREE,
            "pro": cls.COMMISSION_RATE_PRO,
            "super_pro": cls.COMMISSION_RATE_SUPER_PRO,
        }

    @staticmethod
    def validate_payment_gateway() -> bool:
        """Check whether PayPal credentials are configured"""
        if not Config.PAYPAL_CLIENT_ID or not Config.PAYPAL_CLIENT_SECRET:
            logger.warning("⚠️ PayPal credentials not configured - gateway calls will fail")
            return False
        return True

    @staticmethod
    def summary() -> Dict[str, Any]:
        return {
            "environment": Config.ENVIRONMENT,
            "currency": Config.PLATFORM_CURRENCY,
            "rates": {k: str(v) for k, v in Config.tier_commission_rates().items()},
            "family_rate": str(Config.COMMISSION_RATE_FAMILY),
            "referral_discount_rate": str(Config.REFERRAL_DISCOUNT_RATE),
            "commission_minimum": str(Config.COMMISSION_MIN_AMOUNT) if Config.COMMISSION_MIN_ENABLED else None,
            "auto_confirm_grace_hours": Config.AUTO_CONFIRM_GRACE_HOURS,
            "paypal_mode": Config.PAYPAL_MODE,
        }

    @staticmethod
    def log_configuration():
        """Log effective non-secret configuration at startup"""
        summary = Config.summary()
        logger.info(f"🔧 CONFIG: environment={summary['environment']}, currency={summary['currency']}")
        logger.info(
            f"💰 COMMISSION: tiers={summary['rates']}, family={summary['family_rate']}, "
            f"referral={summary['referral_discount_rate']}, minimum={summary['commission_minimum']}"
        )
        logger.info(
            f"⏰ SCHEDULER: auto-confirm grace {summary['auto_confirm_grace_hours']}h, "
            f"every {Config.AUTO_CONFIRM_INTERVAL_MINUTES}m; reminders every "
            f"{Config.CONFIRMATION_REMINDER_INTERVAL_MINUTES}m"
        )
        logger.info(f"💳 PAYPAL: mode={summary['paypal_mode']}, base_url={Config.PAYPAL_BASE_URL}")
