"""Configuration management for the ledger-backed escrow core"""

import os
import logging
from decimal import Decimal
from typing import List

logger = logging.getLogger(__name__)


def _int_list(raw: str) -> List[int]:
    return [int(uid.strip()) for uid in raw.split(",") if uid.strip()]


def _str_list(raw: str) -> List[str]:
    return [name.strip() for name in raw.split(",") if name.strip()]


class Config:
    """Application configuration"""

    # Environment detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Telegram transport for notifications
    BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN") or os.getenv("BOT_TOKEN")

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///escrow.db")

    # Botmasters: platform ids are authoritative, usernames are a weak fallback
    BOTMASTER_IDS = _int_list(os.getenv("BOTMASTER_IDS", ""))
    BOTMASTER_USERNAMES = _str_list(os.getenv("BOTMASTER_USERNAMES", ""))

    # Ledger (escrow contract)
    LEDGER_RPC_URL = os.getenv("LEDGER_RPC_URL", os.getenv("RPC_URL", ""))
    LEDGER_CHAIN_ID = int(os.getenv("LEDGER_CHAIN_ID", "84532"))
    ESCROW_CONTRACT_ADDRESS = os.getenv("ESCROW_CONTRACT_ADDRESS", "")
    LEDGER_PRIVATE_KEY = os.getenv("LEDGER_PRIVATE_KEY", os.getenv("PRIVATE_KEY", ""))
    LEDGER_TOKEN_DECIMALS = int(os.getenv("LEDGER_TOKEN_DECIMALS", "6"))
    LEDGER_GAS_LIMIT = int(os.getenv("LEDGER_GAS_LIMIT", "300000"))
    LEDGER_CALL_TIMEOUT_SECONDS = float(os.getenv("LEDGER_CALL_TIMEOUT_SECONDS", "30"))
    LEDGER_CONFIRMATION_TIMEOUT_SECONDS = float(
        os.getenv("LEDGER_CONFIRMATION_TIMEOUT_SECONDS", "60")
    )

    # Reconciliation
    RECONCILE_INTERVAL_SECONDS = int(os.getenv("RECONCILE_INTERVAL_SECONDS", "30"))
    FUNDED_REMINDER_HOURS = float(os.getenv("FUNDED_REMINDER_HOURS", "24"))
    DIVERGENCE_ALERT_COOLDOWN_SECONDS = int(
        os.getenv("DIVERGENCE_ALERT_COOLDOWN_SECONDS", "3600")
    )

    # Deal terms
    DEAL_CODE_PREFIX = os.getenv("DEAL_CODE_PREFIX", "TL").upper()
    DEAL_CODE_LENGTH = int(os.getenv("DEAL_CODE_LENGTH", "4"))
    DEAL_MIN_AMOUNT = Decimal(os.getenv("DEAL_MIN_AMOUNT", "1"))
    DEAL_MAX_AMOUNT = Decimal(os.getenv("DEAL_MAX_AMOUNT", "500"))
    DEAL_CURRENCY = os.getenv("DEAL_CURRENCY", "USDC")

    # Moderation and messaging
    ADMIN_MESSAGE_COOLDOWN_SECONDS = int(os.getenv("ADMIN_MESSAGE_COOLDOWN_SECONDS", "10"))
    NOTIFICATION_TIMEOUT_SECONDS = float(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "10"))
    COOLDOWN_CACHE_MAX_ENTRIES = int(os.getenv("COOLDOWN_CACHE_MAX_ENTRIES", "10000"))
    AUDIT_LOG_LIMIT = int(os.getenv("AUDIT_LOG_LIMIT", "20"))
    AUDIT_LOG_FILE = os.getenv("AUDIT_LOG_FILE", "")

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Escrow Environment Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Database: {Config.DATABASE_URL.split('@')[-1]}")
        logger.info(f"   Botmaster IDs: {len(Config.BOTMASTER_IDS)} configured")
        if Config.BOTMASTER_USERNAMES:
            logger.warning(
                f"⚠️ BOTMASTER_USERNAMES set ({len(Config.BOTMASTER_USERNAMES)}): "
                "username matches are weak identity checks"
            )
        logger.info(f"   Ledger RPC: {'configured' if Config.LEDGER_RPC_URL else 'missing'}")
        logger.info(f"   Escrow contract: {Config.ESCROW_CONTRACT_ADDRESS or 'missing'}")
        logger.info(f"   Reconcile interval: {Config.RECONCILE_INTERVAL_SECONDS}s")
        logger.info(
            f"   Deal amount range: {Config.DEAL_MIN_AMOUNT}-{Config.DEAL_MAX_AMOUNT} "
            f"{Config.DEAL_CURRENCY}"
        )

    @staticmethod
    def validate() -> List[str]:
        """Return the list of settings that are required but missing"""
        missing = []
        if not Config.BOT_TOKEN:
            missing.append("TELEGRAM_BOT_TOKEN")
        if not Config.LEDGER_RPC_URL:
            missing.append("LEDGER_RPC_URL")
        if not Config.ESCROW_CONTRACT_ADDRESS:
            missing.append("ESCROW_CONTRACT_ADDRESS")
        if not Config.LEDGER_PRIVATE_KEY:
            missing.append("LEDGER_PRIVATE_KEY")
        if not Config.BOTMASTER_IDS and not Config.BOTMASTER_USERNAMES:
            missing.append("BOTMASTER_IDS")
        return missing
