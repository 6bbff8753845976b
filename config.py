"""Configuration management for the duel wagering service"""

import os
import logging
from typing import List

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid integer for {name}={raw!r}, using default {default}")
        return default


class Config:
    """Application configuration"""

    # Environment detection: ENVIRONMENT takes absolute priority
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL")
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    # Deposit confirmation policy
    REQUIRED_CONFIRMATIONS = _int_env("REQUIRED_CONFIRMATIONS", 12)
    CONFIRMATION_POLL_SECONDS = _int_env("CONFIRMATION_POLL_SECONDS", 30)
    CREDIT_REDRIVE_INTERVAL_MINUTES = _int_env("CREDIT_REDRIVE_INTERVAL_MINUTES", 5)

    # Duel policy
    PLATFORM_FEE_BPS = _int_env("PLATFORM_FEE_BPS", 0)  # basis points of the pot
    CHALLENGE_EXPIRY_MINUTES = _int_env("CHALLENGE_EXPIRY_MINUTES", 30)
    ACTIVE_DUEL_EXPIRY_MINUTES = _int_env("ACTIVE_DUEL_EXPIRY_MINUTES", 120)
    EXPIRY_SWEEP_INTERVAL_MINUTES = _int_env("EXPIRY_SWEEP_INTERVAL_MINUTES", 5)
    EXPIRY_BATCH_SIZE = _int_env("EXPIRY_BATCH_SIZE", 50)

    # Regional judge bots
    BOT_SHARED_SECRET = os.getenv("BOT_SHARED_SECRET")
    BOT_REGIONS = [
        region.strip()
        for region in os.getenv("BOT_REGIONS", "North America,Europe,Oceania").split(",")
        if region.strip()
    ]
    BOT_OFFLINE_THRESHOLD_SECONDS = _int_env("BOT_OFFLINE_THRESHOLD_SECONDS", 45)

    # Chain data provider (JSON-RPC) and hot wallet signer
    CHAIN_RPC_URL = os.getenv("CHAIN_RPC_URL")
    PAYOUT_SENDER_URL = os.getenv("PAYOUT_SENDER_URL")
    PAYOUT_SENDER_API_KEY = os.getenv("PAYOUT_SENDER_API_KEY")
    SUPPORTED_PAYOUT_TOKENS = ["ETH", "USDT", "USDC"]
    EXTERNAL_API_TIMEOUT_SECONDS = _int_env("EXTERNAL_API_TIMEOUT_SECONDS", 30)
    EXTERNAL_API_MAX_RETRIES = _int_env("EXTERNAL_API_MAX_RETRIES", 3)

    # HTTP surface
    PORT = _int_env("PORT", 10000)

    # Operational logs
    ANOMALY_LOG_DIR = os.getenv("ANOMALY_LOG_DIR", "logs")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Service Environment Configuration:")
        logger.info(f"   Environment: {Config.CURRENT_ENVIRONMENT.upper()}")
        logger.info(f"   Database configured: {bool(Config.DATABASE_URL)}")
        logger.info(f"   Required confirmations: {Config.REQUIRED_CONFIRMATIONS}")
        logger.info(f"   Platform fee: {Config.PLATFORM_FEE_BPS} bps")
        logger.info(f"   Bot regions: {', '.join(Config.BOT_REGIONS)}")
        logger.info(f"   Bot secret configured: {bool(Config.BOT_SHARED_SECRET)}")
        logger.info(f"   Chain RPC configured: {bool(Config.CHAIN_RPC_URL)}")
        logger.info(f"   Payout sender configured: {bool(Config.PAYOUT_SENDER_URL)}")

    @staticmethod
    def validate() -> List[str]:
        """Return the names of settings that must be present but are missing"""
        missing = []
        if not Config.DATABASE_URL:
            missing.append("DATABASE_URL")
        if not Config.BOT_SHARED_SECRET:
            missing.append("BOT_SHARED_SECRET")
        if Config.IS_PRODUCTION:
            if not Config.CHAIN_RPC_URL:
                missing.append("CHAIN_RPC_URL")
            if not Config.PAYOUT_SENDER_URL:
                missing.append("PAYOUT_SENDER_URL")
        if Config.REQUIRED_CONFIRMATIONS < 1:
            missing.append("REQUIRED_CONFIRMATIONS (must be >= 1)")
        if not 0 <= Config.PLATFORM_FEE_BPS < 10000:
            missing.append("PLATFORM_FEE_BPS (must be within 0..9999)")
        return missing
