"""Helper utilities for the treasury ledger"""

import secrets
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from config import Config


def generate_order_code(prefix: Optional[str] = None, now: Optional[datetime] = None) -> str:
    """
    Human-readable order code: <PREFIX>-<YEAR>-<6 timestamp digits><4 random digits>

    Example: ORD-2025-4821930417
    """
    now = now or datetime.now(timezone.utc)
    timestamp_digits = str(int(time.time() * 1000))[-6:]
    random_digits = f"{secrets.randbelow(10000):04d}"
    return f"{prefix or Config.ORDER_CODE_PREFIX}-{now.year}-{timestamp_digits}{random_digits}"


def format_amount(amount: Decimal, currency: str = "") -> str:
    """Two-decimal display string, e.g. '5.00 USDC'"""
    text = f"{Decimal(amount):.2f}"
    return f"{text} {currency}".strip()


def mask_identifier(value: Optional[str], visible: int = 4) -> str:
    """Mask all but the last characters of a wallet or email for logs"""
    if not value:
        return ""
    value = str(value)
    if len(value) <= visible:
        return value
    return "*" * (len(value) - visible) + value[-visible:]
