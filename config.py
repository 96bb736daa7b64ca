"""Configuration management for the Treasury Deposit & Balance service"""

import os
import logging
from decimal import Decimal
from typing import Dict, List

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    # Environment detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Database
    # postgresql:// URLs are converted to the asyncpg driver in database.py
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./treasury.db")

    # Ledger network / mirror node (the read-only indexer we verify deposits against)
    LEDGER_NETWORK = os.getenv("LEDGER_NETWORK", "testnet").lower().strip()
    TESTNET_MIRROR_URL = "https://testnet.mirrornode.hedera.com/api/v1"
    MAINNET_MIRROR_URL = "https://mainnet-public.mirrornode.hedera.com/api/v1"
    MIRROR_NODE_URL = os.getenv(
        "MIRROR_NODE_URL",
        MAINNET_MIRROR_URL if LEDGER_NETWORK == "mainnet" else TESTNET_MIRROR_URL,
    ).rstrip("/")

    # Oracle call policy - timeout per request, retries belong to the caller
    ORACLE_TIMEOUT_SECONDS = float(os.getenv("ORACLE_TIMEOUT_SECONDS", "10"))
    ORACLE_RETRY_ATTEMPTS = int(os.getenv("ORACLE_RETRY_ATTEMPTS", "2"))
    ORACLE_RETRY_DELAY_SECONDS = float(os.getenv("ORACLE_RETRY_DELAY_SECONDS", "1.0"))

    # Deposit policy
    TREASURY_ACCOUNT_ID = os.getenv("TREASURY_ACCOUNT_ID", "0.0.654321")
    DEPOSIT_TOKEN_ID = os.getenv("DEPOSIT_TOKEN_ID", "0.0.123456")
    DEPOSIT_TOKEN_SYMBOL = os.getenv("DEPOSIT_TOKEN_SYMBOL", "USDC")
    DEPOSIT_TOKEN_DECIMALS = int(os.getenv("DEPOSIT_TOKEN_DECIMALS", "6"))
    MIN_DEPOSIT_AMOUNT = Decimal(os.getenv("MIN_DEPOSIT_AMOUNT", "1"))
    DEPOSIT_AMOUNT_TOLERANCE = Decimal(os.getenv("DEPOSIT_AMOUNT_TOLERANCE", "0.01"))
    DEPOSIT_RECENCY_HOURS = int(os.getenv("DEPOSIT_RECENCY_HOURS", "24"))
    # A reservation older than this is treated as abandoned (crashed worker) and may be taken over
    DEPOSIT_RESERVATION_TTL_SECONDS = int(os.getenv("DEPOSIT_RESERVATION_TTL_SECONDS", "300"))
    # Consensus timestamps further ahead of our clock than this are rejected
    DEPOSIT_MAX_CLOCK_SKEW_SECONDS = int(os.getenv("DEPOSIT_MAX_CLOCK_SKEW_SECONDS", "300"))

    # Orders
    ORDER_TOTAL_TOLERANCE = Decimal(os.getenv("ORDER_TOTAL_TOLERANCE", "0.01"))
    ORDER_CODE_PREFIX = os.getenv("ORDER_CODE_PREFIX", "ORD")
    DEFAULT_ORDER_CURRENCY = os.getenv("DEFAULT_ORDER_CURRENCY", "USDC")

    # HTTP boundary
    API_HOST = os.getenv("API_HOST", "0.0.0.0")
    API_PORT = int(os.getenv("API_PORT", "8000"))

    @staticmethod
    def get_network_info() -> Dict[str, str]:
        """Describe which ledger and accounts deposits are verified against"""
        return {
            "network": Config.LEDGER_NETWORK,
            "mirror_node_url": Config.MIRROR_NODE_URL,
            "expected_token_id": Config.DEPOSIT_TOKEN_ID,
            "treasury_account": Config.TREASURY_ACCOUNT_ID,
        }

    @staticmethod
    def validate() -> List[str]:
        """Check deposit policy settings and log anything that looks wrong"""
        from utils.normalizers import is_valid_account_id

        problems = []
        if Config.LEDGER_NETWORK not in ("testnet", "mainnet"):
            problems.append(f"LEDGER_NETWORK must be testnet or mainnet, got {Config.LEDGER_NETWORK}")
        if not is_valid_account_id(Config.TREASURY_ACCOUNT_ID):
            problems.append(f"TREASURY_ACCOUNT_ID is not a valid account id: {Config.TREASURY_ACCOUNT_ID}")
        if not is_valid_account_id(Config.DEPOSIT_TOKEN_ID):
            problems.append(f"DEPOSIT_TOKEN_ID is not a valid token id: {Config.DEPOSIT_TOKEN_ID}")
        if Config.DEPOSIT_TOKEN_DECIMALS < 0:
            problems.append("DEPOSIT_TOKEN_DECIMALS cannot be negative")
        if Config.MIN_DEPOSIT_AMOUNT < 0:
            problems.append("MIN_DEPOSIT_AMOUNT cannot be negative")
        if Config.ORACLE_RETRY_ATTEMPTS < 1:
            problems.append("ORACLE_RETRY_ATTEMPTS must be at least 1")

        for problem in problems:
            logger.error(f"❌ CONFIG_INVALID: {problem}")
        return problems

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Treasury Environment Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Ledger network: {Config.LEDGER_NETWORK} ({Config.MIRROR_NODE_URL})")
        logger.info(f"   Treasury account: {Config.TREASURY_ACCOUNT_ID}")
        logger.info(
            f"   Deposit token: {Config.DEPOSIT_TOKEN_SYMBOL} {Config.DEPOSIT_TOKEN_ID} "
            f"({Config.DEPOSIT_TOKEN_DECIMALS} decimals, min {Config.MIN_DEPOSIT_AMOUNT})"
        )
        # Never log credentials embedded in the URL
        database_kind = Config.DATABASE_URL.split("://", 1)[0]
        logger.info(f"   Database driver: {database_kind}")
