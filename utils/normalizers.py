"""
Centralized data normalization utilities for identifiers.

Every identifier that reaches the database or the ledger indexer passes
through one of these functions first, so lookups and uniqueness checks
always compare canonical values.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional, Union

logger = logging.getLogger(__name__)

# shard.realm.number, e.g. 0.0.12345
ACCOUNT_ID_PATTERN = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")

# accountId + (@|-) + seconds + (.|-) + nanos
# 0.0.5789379@1754584444.553560679 or 0.0.5789379-1754584444-553560679
TRANSACTION_ID_PATTERN = re.compile(r"^(\d+)\.(\d+)\.(\d+)[@-](\d+)[.-](\d+)$")
MAX_NANOS = 999_999_999

EVM_ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


@dataclass(frozen=True)
class LedgerTransactionId:
    """Parsed external transaction id, compared by value not by spelling"""

    account_id: str
    seconds: int
    nanos: int

    @property
    def canonical(self) -> str:
        """Indexer query form (nanos zero-padded to 9 digits), also the deposit dedup key"""
        return f"{self.account_id}-{self.seconds}-{self.nanos:09d}"

    @property
    def display(self) -> str:
        return f"{self.account_id}@{self.seconds}.{self.nanos:09d}"

    def __str__(self) -> str:
        return self.canonical


def is_valid_account_id(value: Optional[str]) -> bool:
    """Check the shard.realm.number account id pattern"""
    if not value or not isinstance(value, str):
        return False
    return ACCOUNT_ID_PATTERN.match(value.strip()) is not None


def is_valid_transaction_id(value: Optional[str]) -> bool:
    return parse_transaction_id(value) is not None


def parse_transaction_id(value: Optional[str]) -> Optional[LedgerTransactionId]:
    """
    Parse either accepted transaction id spelling.

    Every part is read as a number, so 1000.1 and 1000.000000001 name the same
    transaction. Returns None when the value is malformed (or nanos exceed
    999999999) so callers decide which error to raise.

    Examples:
        >>> parse_transaction_id("0.0.555@1000.1").canonical
        '0.0.555-1000-000000001'
        >>> parse_transaction_id("0.0.555-1000-000000001").canonical
        '0.0.555-1000-000000001'
    """
    if not value or not isinstance(value, str):
        return None
    match = TRANSACTION_ID_PATTERN.match(value.strip())
    if not match:
        return None
    shard, realm, num, seconds, nanos = (int(part) for part in match.groups())
    if nanos > MAX_NANOS:
        return None
    return LedgerTransactionId(account_id=f"{shard}.{realm}.{num}", seconds=seconds, nanos=nanos)


def normalize_transaction_id(value: Optional[str]) -> Optional[str]:
    """Canonical indexer form of a transaction id, or None if malformed"""
    parsed = parse_transaction_id(value)
    return parsed.canonical if parsed else None


def normalize_chat_id(value: Union[int, str, None]) -> Optional[int]:
    """
    Normalize a messaging chat id to integer for consistent database operations.

    Args:
        value: Chat ID as int, str (digits), or None

    Returns:
        Integer chat id or None if input is None/blank

    Raises:
        ValueError: If the value is negative or contains non-digit characters
    """
    if value is None:
        return None

    if isinstance(value, bool):
        raise ValueError(f"Chat ID must be numeric: {value}")

    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"Chat ID cannot be negative: {value}")
        return value

    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        if not value.isdigit():
            raise ValueError(f"Chat ID must contain only digits: {value}")
        return int(value)

    raise ValueError(f"Cannot convert chat_id to int: {value} (type: {type(value)})")


def normalize_wallet_address(value: Optional[str]) -> Optional[str]:
    """
    Normalize a wallet identifier.

    Accepts an EVM-style address (lowercased so checksum casing never creates
    a second user) or a native shard.realm.number account id.
    """
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"Wallet address must be a string: {value!r}")
    value = value.strip()
    if not value:
        return None
    if EVM_ADDRESS_PATTERN.match(value):
        return value.lower()
    if ACCOUNT_ID_PATTERN.match(value):
        return value
    raise ValueError(f"Invalid wallet address format: {value}")


def normalize_email(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"Email must be a string: {value!r}")
    value = value.strip().lower()
    if not value:
        return None
    if not EMAIL_PATTERN.match(value):
        raise ValueError(f"Invalid email address format: {value}")
    return value

