"""Configuration management for the Stride SIP scheduler"""

import os
import logging
from decimal import Decimal
from typing import Dict, List

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised at startup when required settings are absent"""
    pass


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ CONFIG: {name}={raw!r} is not an integer, using {default}")
        return default


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL")

    # Aptos network and contracts
    APTOS_NETWORK = os.getenv("APTOS_NETWORK", "testnet").lower()
    APTOS_FULLNODE_URL = os.getenv(
        "APTOS_FULLNODE_URL",
        "https://fullnode.mainnet.aptoslabs.com/v1"
        if APTOS_NETWORK == "mainnet"
        else "https://fullnode.testnet.aptoslabs.com/v1",
    )
    APTOS_API_KEY = os.getenv("APTOS_API_KEY")
    CONTRACT_ADDRESS = os.getenv("CONTRACT_ADDRESS")
    DEX_PACKAGE_ADDRESS = os.getenv(
        "DEX_PACKAGE_ADDRESS",
        "0xc0deb00c9154b6b64db01e277648f5bd694cecc703fd0d9053fb95a58b292b17",
    )
    DEX_MARKET_ADDRESS = os.getenv("DEX_MARKET_ADDRESS")
    USDC_COIN_TYPE = os.getenv(
        "USDC_COIN_TYPE",
        "0xf22bede237a07e121b56d91a491eb7bcdfd1f5907926a9e58338f964a01b17fa::asset::USDC",
    )

    # Operating keys: scheduler executes plans, treasury funds vaults
    SCHEDULER_PRIVATE_KEY = os.getenv("SCHEDULER_PRIVATE_KEY")
    TREASURY_PRIVATE_KEY = os.getenv("TREASURY_PRIVATE_KEY")

    # Indexer (fills and chain events)
    INDEXER_GRAPHQL_URL = os.getenv("INDEXER_GRAPHQL_URL")
    INDEXER_API_KEY = os.getenv("INDEXER_API_KEY")
    INDEXER_WEBHOOK_SECRET = os.getenv("INDEXER_WEBHOOK_SECRET")

    # Oracles
    FIAT_RATE_API_URL = os.getenv("FIAT_RATE_API_URL", "https://api.exchangerate-api.com/v4/latest/USD")
    FIAT_CURRENCY = os.getenv("FIAT_CURRENCY", "INR")
    PYTH_HERMES_URL = os.getenv("PYTH_HERMES_URL", "https://hermes.pyth.network")
    ORACLE_TIMEOUT_SECONDS = _int_env("ORACLE_TIMEOUT_SECONDS", 5)

    # Payment gateway
    RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID")
    RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET")
    RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET")
    RAZORPAY_API_URL = os.getenv("RAZORPAY_API_URL", "https://api.razorpay.com/v1")
    UPI_WEBHOOK_SECRET = os.getenv("UPI_WEBHOOK_SECRET")

    # Rewards campaign engine
    PHOTON_API_URL = os.getenv("PHOTON_API_URL", "https://api.getstan.app/identity-service/api/v1")
    PHOTON_API_KEY = os.getenv("PHOTON_API_KEY")
    PHOTON_CAMPAIGN_ID = os.getenv("PHOTON_CAMPAIGN_ID")

    # Receipt blob storage
    SHELBY_API_URL = os.getenv("SHELBY_API_URL")
    SHELBY_API_KEY = os.getenv("SHELBY_API_KEY")
    SHELBY_BUCKET_NAME = os.getenv("SHELBY_BUCKET_NAME", "stride-receipts")
    RECEIPT_RETENTION_DAYS = _int_env("RECEIPT_RETENTION_DAYS", 365 * 7)

    # Scheduler tunables
    SCHEDULER_INTERVAL_MINUTES = _int_env("SCHEDULER_INTERVAL_MINUTES", 5)
    SCHEDULER_MAX_CONCURRENCY = _int_env("SCHEDULER_MAX_CONCURRENCY", 5)
    SCHEDULER_LEASE_SECONDS = _int_env("SCHEDULER_LEASE_SECONDS", 900)
    PLAN_EXECUTION_TIMEOUT_SECONDS = _int_env("PLAN_EXECUTION_TIMEOUT_SECONDS", 120)
    CONFIRMATION_TIMEOUT_SECONDS = _int_env("CONFIRMATION_TIMEOUT_SECONDS", 60)
    FILL_TIMEOUT_SECONDS = _int_env("FILL_TIMEOUT_SECONDS", 30)
    FILL_POLL_INTERVAL_SECONDS = _int_env("FILL_POLL_INTERVAL_SECONDS", 2)
    AUTO_PAUSE_THRESHOLD = _int_env("AUTO_PAUSE_THRESHOLD", 3)
    INDEXER_SYNC_INTERVAL_MINUTES = _int_env("INDEXER_SYNC_INTERVAL_MINUTES", 60)

    # Plan limits (fiat amounts in paise)
    MIN_PLAN_AMOUNT_PAISE = _int_env("MIN_PLAN_AMOUNT_PAISE", 100 * 100)
    MAX_PLAN_AMOUNT_PAISE = _int_env("MAX_PLAN_AMOUNT_PAISE", 100000 * 100)

    # Stablecoin precision (micro-units)
    STABLE_DECIMALS = 6
    STABLE_UNIT = Decimal(10) ** STABLE_DECIMALS

    # Webhook server
    WEBHOOK_HOST = os.getenv("WEBHOOK_HOST", "0.0.0.0")
    WEBHOOK_PORT = _int_env("PORT", 8000)

    REQUIRED_SETTINGS: List[str] = [
        "DATABASE_URL",
        "CONTRACT_ADDRESS",
        "SCHEDULER_PRIVATE_KEY",
        "TREASURY_PRIVATE_KEY",
    ]

    @classmethod
    def validate_required(cls) -> None:
        """Fail loudly when a required secret is absent. No placeholder values are ever used."""
        missing = [name for name in cls.REQUIRED_SETTINGS if not getattr(cls, name, None)]
        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")

        if cls.SCHEDULER_PRIVATE_KEY == cls.TREASURY_PRIVATE_KEY:
            raise ConfigurationError("SCHEDULER_PRIVATE_KEY and TREASURY_PRIVATE_KEY must be different keys")

        # A plan can outlive its timeout by one shielded confirmation wait
        if cls.SCHEDULER_LEASE_SECONDS <= cls.PLAN_EXECUTION_TIMEOUT_SECONDS + cls.CONFIRMATION_TIMEOUT_SECONDS:
            raise ConfigurationError(
                "SCHEDULER_LEASE_SECONDS must exceed PLAN_EXECUTION_TIMEOUT_SECONDS + CONFIRMATION_TIMEOUT_SECONDS"
            )

        logger.info(f"✅ CONFIG_VALIDATED: environment={cls.ENVIRONMENT}, network={cls.APTOS_NETWORK}")

    @classmethod
    def optional_integrations(cls) -> Dict[str, bool]:
        """Report which optional integrations are configured"""
        return {
            "razorpay": bool(cls.RAZORPAY_KEY_ID and cls.RAZORPAY_KEY_SECRET),
            "razorpay_webhook": bool(cls.RAZORPAY_WEBHOOK_SECRET),
            "photon_rewards": bool(cls.PHOTON_API_KEY and cls.PHOTON_CAMPAIGN_ID),
            "shelby_receipts": bool(cls.SHELBY_API_URL and cls.SHELBY_API_KEY),
            "fill_indexer": bool(cls.INDEXER_GRAPHQL_URL),
        }
