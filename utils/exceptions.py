"""
Treasury Error Taxonomy
Every failure in the deposit/balance/order core surfaces as one of these.

Each error carries:
- code: stable machine-readable identifier (used by the HTTP layer and bots)
- user_message: actionable text that can be shown to the end user
- retryable: whether the caller may retry the same request later
"""

from decimal import Decimal
from typing import Any, Dict, Optional


class TreasuryError(Exception):
    """Base class for all deposit, balance and order errors"""

    code = "treasury_error"
    retryable = False
    default_user_message = "Something went wrong. Please try again."

    def __init__(self, message: str, user_message: Optional[str] = None, **details: Any):
        self.message = message
        self.user_message = user_message or self.default_user_message
        self.details: Dict[str, Any] = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.code,
            "message": self.user_message,
            "retryable": self.retryable,
        }


class ValidationError(TreasuryError):
    """Malformed input - caller's fault, never retryable"""

    code = "validation_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message, user_message=message, **details)


class DuplicateError(TreasuryError):
    """External transaction id has already been processed"""

    code = "duplicate_transaction"
    default_user_message = "This transaction has already been used."


class NotFoundError(TreasuryError):
    """Transaction, account, user or order does not exist"""

    code = "not_found"
    default_user_message = "Not found. If you just sent the transaction, wait a moment and try again."


class TransactionFailedError(TreasuryError):
    """Ledger reports the transaction did not succeed"""

    code = "transaction_failed"

    def __init__(self, message: str, result_code: Optional[str] = None):
        super().__init__(
            message,
            user_message=f"The transaction failed on the ledger ({result_code or 'unknown result'}).",
            result_code=result_code,
        )


class NoMatchingTransferError(TreasuryError):
    """No transfer of the expected token to the treasury account"""

    code = "no_matching_transfer"
    default_user_message = "No transfer of the supported token to the treasury account was found in this transaction."


class BelowMinimumError(TreasuryError):
    """Deposit amount is below the configured minimum"""

    code = "below_minimum"

    def __init__(self, amount: Decimal, minimum: Decimal):
        super().__init__(
            f"Deposit amount {amount} below minimum {minimum}",
            user_message=f"Amount below minimum. Minimum deposit is {minimum}, received {amount}.",
            amount=amount,
            minimum=minimum,
        )


class AmountMismatchError(TreasuryError):
    """Amount on the ledger differs from the amount the caller claimed"""

    code = "amount_mismatch"

    def __init__(self, actual: Decimal, expected: Decimal):
        super().__init__(
            f"Transferred amount {actual} does not match expected {expected}",
            user_message=f"Amount mismatch: the transaction transferred {actual}, expected {expected}.",
            actual=actual,
            expected=expected,
        )


class StaleTransactionError(TreasuryError):
    """Transaction is older than the recency window"""

    code = "stale_transaction"

    def __init__(self, message: str, window_hours: int):
        super().__init__(
            message,
            user_message=f"Transaction is too old. Only deposits from the last {window_hours} hours are accepted.",
            window_hours=window_hours,
        )


class OracleUnavailableError(TreasuryError):
    """Ledger indexer timed out, returned 5xx or could not be reached"""

    code = "oracle_unavailable"
    retryable = True
    default_user_message = "The ledger service is temporarily unavailable. Please try again shortly."


class InsufficientBalanceError(TreasuryError):
    """Debit would take the balance below zero"""

    code = "insufficient_balance"

    def __init__(self, user_id: int, balance: Decimal, requested: Decimal):
        super().__init__(
            f"Insufficient balance for user {user_id}: {balance} < {requested}",
            user_message=f"Insufficient balance. You need {requested} but have {balance}. Please make a deposit first.",
            user_id=user_id,
            balance=balance,
            requested=requested,
        )


class IdentityConflictError(TreasuryError):
    """Supplied identifiers point at different users or contradict a stored one"""

    code = "identity_conflict"
    default_user_message = (
        "These account details belong to different users. "
        "Please sign in with a single account or contact support to link them."
    )


class InvalidTransitionError(TreasuryError):
    """Illegal order status change"""

    code = "invalid_transition"

    def __init__(self, order_code: str, current_status: str, new_status: str):
        super().__init__(
            f"Order {order_code}: cannot move from {current_status} to {new_status}",
            user_message=f"Order {order_code} is {current_status} and cannot be changed to {new_status}.",
            order_code=order_code,
            current_status=current_status,
            new_status=new_status,
        )
