"""Configuration management for the escrow settlement engine"""

import os
import logging
from decimal import Decimal
from typing import Set

logger = logging.getLogger(__name__)


def _parse_id_list(raw: str) -> Set[str]:
    return {item.strip() for item in raw.split(",") if item.strip()}


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Storage
    # postgresql:// URLs are rewritten to the asyncpg driver in database.py
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./escrow.db")
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    # Fee policy: a flat platform fee on each side of the hold
    CONTRACTOR_FEE_FLAT = Decimal(os.getenv("CONTRACTOR_FEE_FLAT", "1.00"))
    CUSTOMER_FEE_FLAT = Decimal(os.getenv("CUSTOMER_FEE_FLAT", "1.00"))
    USD_DECIMAL_PLACES = int(os.getenv("USD_DECIMAL_PLACES", "2"))

    # Hold lifecycle
    HOLD_RELEASE_DAYS = int(os.getenv("HOLD_RELEASE_DAYS", "7"))
    AUTO_RELEASE_ENABLED = os.getenv("AUTO_RELEASE_ENABLED", "true").lower() == "true"
    RELEASE_SWEEP_INTERVAL_MINUTES = int(os.getenv("RELEASE_SWEEP_INTERVAL_MINUTES", "10"))
    RELEASE_SWEEP_BATCH_SIZE = int(os.getenv("RELEASE_SWEEP_BATCH_SIZE", "100"))
    RELEASING_GRACE_MINUTES = int(os.getenv("RELEASING_GRACE_MINUTES", "15"))
    RECOVERY_SWEEP_INTERVAL_MINUTES = int(os.getenv("RECOVERY_SWEEP_INTERVAL_MINUTES", "5"))

    # Payment rail
    PAYMENT_RAIL_URL = os.getenv("PAYMENT_RAIL_URL", "")
    PAYMENT_RAIL_API_KEY = os.getenv("PAYMENT_RAIL_API_KEY", "")
    PAYMENT_RAIL_TIMEOUT_SECONDS = float(os.getenv("PAYMENT_RAIL_TIMEOUT_SECONDS", "30"))

    # Disputes
    DISPUTE_RESPONSE_HOURS = int(os.getenv("DISPUTE_RESPONSE_HOURS", "48"))
    DISPUTE_RESOLUTION_DAYS = int(os.getenv("DISPUTE_RESOLUTION_DAYS", "7"))
    ENFORCE_DISPUTE_WINDOW = os.getenv("ENFORCE_DISPUTE_WINDOW", "false").lower() == "true"
    COMPLAINT_FLAG_THRESHOLD = int(os.getenv("COMPLAINT_FLAG_THRESHOLD", "3"))
    COMPLAINT_WINDOW_DAYS = int(os.getenv("COMPLAINT_WINDOW_DAYS", "90"))
    ESCROW_ADMIN_IDS = _parse_id_list(os.getenv("ESCROW_ADMIN_IDS", ""))

    # Auto-generated review posted when the sweep releases a hold
    AUTO_REVIEW_RATING = int(os.getenv("AUTO_REVIEW_RATING", "5"))

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    @staticmethod
    def log_configuration():
        """Log the effective escrow configuration"""
        logger.info(f"🔧 Environment: {Config.ENVIRONMENT}")
        logger.info(
            f"💰 Fees: contractor={Config.CONTRACTOR_FEE_FLAT} customer={Config.CUSTOMER_FEE_FLAT} (flat)"
        )
        logger.info(
            f"⏰ Release window: {Config.HOLD_RELEASE_DAYS} days, "
            f"auto-release {'enabled' if Config.AUTO_RELEASE_ENABLED else 'DISABLED'}, "
            f"sweep every {Config.RELEASE_SWEEP_INTERVAL_MINUTES} min"
        )
        logger.info(
            f"🏦 Payment rail: {'configured' if Config.PAYMENT_RAIL_URL else 'NOT configured'}, "
            f"timeout={Config.PAYMENT_RAIL_TIMEOUT_SECONDS}s"
        )
        if not Config.ESCROW_ADMIN_IDS:
            logger.warning("⚠️ ESCROW_ADMIN_IDS is empty - nobody can resolve disputes")

    @staticmethod
    def validate_fee_configuration() -> bool:
        """Fees must be non-negative and representable in the currency unit"""
        unit = Decimal(1).scaleb(-Config.USD_DECIMAL_PLACES)
        for name in ("CONTRACTOR_FEE_FLAT", "CUSTOMER_FEE_FLAT"):
            value = getattr(Config, name)
            if value < 0:
                logger.error(f"❌ {name} must not be negative (got {value})")
                return False
            if value != value.quantize(unit):
                logger.error(f"❌ {name} has more precision than {unit} (got {value})")
                return False
        return True
