#!/usr/bin/env python3
"""
Decimal Precision Utilities for Financial Calculations
Enforces consistent Decimal usage across all balance, deposit and order amounts
"""

import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from typing import Union

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 28

Numeric = Union[str, int, float, Decimal]


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with proper precision"""

    LEDGER_PRECISION = Decimal("0.00000001")  # 8 decimal places, matches Numeric(20, 8) columns
    MAX_AMOUNT = Decimal("999999999999")

    @classmethod
    def to_decimal(cls, value: Numeric, context: str = "monetary") -> Decimal:
        """
        Convert any numeric value to Decimal.

        Floats go through str() to avoid binary precision artefacts.

        Raises:
            ValueError: value is None, not numeric, NaN/infinite or out of range
        """
        if value is None:
            raise ValueError(f"Missing amount for {context}")
        if isinstance(value, bool):
            raise ValueError(f"Invalid amount for {context}: {value!r}")

        if isinstance(value, Decimal):
            decimal_value = value
        else:
            try:
                decimal_value = Decimal(str(value).strip())
            except (InvalidOperation, ValueError) as e:
                raise ValueError(f"Invalid amount for {context}: {value!r}") from e

        if not decimal_value.is_finite():
            raise ValueError(f"Invalid amount for {context}: {value!r}")
        if abs(decimal_value) > cls.MAX_AMOUNT:
            logger.warning(f"Unusually large monetary value: {decimal_value} in context: {context}")
            raise ValueError(f"Amount out of range for {context}: {decimal_value}")
        return decimal_value

    @classmethod
    def quantize_ledger(cls, amount: Numeric) -> Decimal:
        """Quantize to the precision balances are stored with"""
        return cls.to_decimal(amount, "ledger").quantize(cls.LEDGER_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def from_raw_units(cls, raw_amount: Numeric, decimals: int) -> Decimal:
        """
        Convert integer token units to a human-scale amount.

        5_000_000 raw units with 6 decimals -> Decimal("5")
        """
        if decimals < 0:
            raise ValueError(f"Token decimals cannot be negative: {decimals}")
        # Raw units legitimately exceed MAX_AMOUNT, so skip to_decimal's range check
        try:
            raw = Decimal(str(raw_amount))
        except (InvalidOperation, ValueError) as e:
            raise ValueError(f"Invalid raw token amount: {raw_amount!r}") from e
        if not raw.is_finite():
            raise ValueError(f"Invalid raw token amount: {raw_amount!r}")
        return raw.scaleb(-decimals)

    @classmethod
    def amounts_match(cls, amount1: Numeric, amount2: Numeric, tolerance: Numeric = "0.01") -> bool:
        """True when the two amounts differ by no more than tolerance"""
        difference = abs(cls.to_decimal(amount1, "compare_amount1") - cls.to_decimal(amount2, "compare_amount2"))
        return difference <= cls.to_decimal(tolerance, "tolerance")
