"""
Deposit Verification Service - turns a claimed ledger transaction into a balance credit

Verification gates run in a fixed order and the first failure wins:
    parse id -> reserve id -> fetch -> result -> matching transfer ->
    amount policy -> recency -> identity -> persist + credit

The reservation is a durable row keyed by the canonical transaction id
(unique constraint), committed on its own before the oracle is queried. Any
failure after that point deletes the row again so a legitimate retry with the
same id is never blocked. The credit runs as a conditional confirmed->credited
flip plus the balance increment in one transaction, so a deposit can be
credited at most once even when reconciliation replays it.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, List, Mapping, Optional, Union

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Config
from database import get_async_session
from models import Amount, Deposit, DepositStatus, utc_now
from services.balance_ledger_service import BalanceLedgerService, deposit_reason
from services.identity_resolver import Identifiers, IdentityResolverService, UserProfile, coerce_identifiers
from services.ledger_oracle_service import ExternalTransactionRecord, LedgerOracleService
from services.retry_service import call_oracle_with_retry
from utils.decimal_precision import MonetaryDecimal, Numeric
from utils.exceptions import (
    AmountMismatchError,
    BelowMinimumError,
    DuplicateError,
    NoMatchingTransferError,
    NotFoundError,
    StaleTransactionError,
    TransactionFailedError,
    ValidationError,
)
from utils.normalizers import LedgerTransactionId, parse_transaction_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DepositClaim:
    """A user's claim that external_tx_id paid the treasury"""

    external_tx_id: str
    identifiers: Union[Identifiers, Mapping[str, Any]]
    expected_amount: Optional[Numeric] = None
    profile: Optional[UserProfile] = None


@dataclass(frozen=True)
class VerifiedTransfer:
    amount: Decimal
    sender_account: Optional[str]
    consensus_timestamp: datetime


class DepositVerificationService:
    """Verify deposits against the ledger oracle and credit the internal balance"""

    def __init__(
        self,
        oracle: Optional[LedgerOracleService] = None,
        identity_resolver: Optional[IdentityResolverService] = None,
        balance_ledger: Optional[BalanceLedgerService] = None,
        session_factory: Optional[async_sessionmaker] = None,
        treasury_account_id: Optional[str] = None,
        token_id: Optional[str] = None,
        token_decimals: Optional[int] = None,
        min_amount: Optional[Numeric] = None,
        amount_tolerance: Optional[Numeric] = None,
        recency_hours: Optional[int] = None,
        reservation_ttl_seconds: Optional[int] = None,
        max_clock_skew_seconds: Optional[int] = None,
        oracle_retry_attempts: Optional[int] = None,
        oracle_retry_delay: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session_factory = session_factory
        self.oracle = oracle or LedgerOracleService()
        self.identity_resolver = identity_resolver or IdentityResolverService(session_factory)
        self.balance_ledger = balance_ledger or BalanceLedgerService(session_factory)

        self.treasury_account_id = treasury_account_id or Config.TREASURY_ACCOUNT_ID
        self.token_id = token_id or Config.DEPOSIT_TOKEN_ID
        self.token_decimals = token_decimals if token_decimals is not None else Config.DEPOSIT_TOKEN_DECIMALS
        self.min_amount = MonetaryDecimal.to_decimal(
            min_amount if min_amount is not None else Config.MIN_DEPOSIT_AMOUNT, "min_deposit"
        )
        self.amount_tolerance = MonetaryDecimal.to_decimal(
            amount_tolerance if amount_tolerance is not None else Config.DEPOSIT_AMOUNT_TOLERANCE, "tolerance"
        )
        self.recency_hours = recency_hours if recency_hours is not None else Config.DEPOSIT_RECENCY_HOURS
        self.reservation_ttl_seconds = (
            reservation_ttl_seconds if reservation_ttl_seconds is not None
            else Config.DEPOSIT_RESERVATION_TTL_SECONDS
        )
        self.max_clock_skew_seconds = (
            max_clock_skew_seconds if max_clock_skew_seconds is not None
            else Config.DEPOSIT_MAX_CLOCK_SKEW_SECONDS
        )
        self.oracle_retry_attempts = oracle_retry_attempts
        self.oracle_retry_delay = oracle_retry_delay
        self._clock = clock or utc_now

    async def verify(self, claim: DepositClaim) -> Deposit:
        """
        Verify a deposit claim and credit the resolved user.

        Returns:
            The credited Deposit

        Raises:
            ValidationError, DuplicateError, NotFoundError, OracleUnavailableError,
            TransactionFailedError, NoMatchingTransferError, BelowMinimumError,
            AmountMismatchError, StaleTransactionError, IdentityConflictError.
            If the credit itself fails the error propagates and the deposit
            stays confirmed for complete_credit() to finish.
        """
        parsed = parse_transaction_id(claim.external_tx_id)
        if parsed is None:
            raise ValidationError(
                f"Invalid transaction ID format: {claim.external_tx_id}. "
                "Expected 0.0.12345@1234567890.123456789 or 0.0.12345-1234567890-123456789"
            )
        expected_amount = self._parse_expected_amount(claim.expected_amount)
        identifiers = coerce_identifiers(claim.identifiers)

        tx_id = parsed.canonical
        reservation_token = await self._reserve(tx_id)

        try:
            record = await self._fetch(parsed)
            transfer = self._check_policy(record, expected_amount)
            user = await self.identity_resolver.resolve(identifiers, claim.profile)
            deposit_id = await self._confirm(tx_id, reservation_token, user.id, transfer)
        except (Exception, asyncio.CancelledError) as e:
            logger.warning(f"❌ DEPOSIT_VERIFICATION_FAILED: {tx_id}: {type(e).__name__}: {e}")
            await self._release(tx_id, reservation_token)
            raise

        return await self.complete_credit(deposit_id)

    async def complete_credit(self, deposit_id: int) -> Deposit:
        """
        Credit a confirmed deposit exactly once.

        Idempotent: an already credited deposit is returned untouched. This is
        the primitive a reconciliation sweep calls for deposits left confirmed
        by a failed credit.
        """
        async with get_async_session(self.session_factory) as session:
            claimed = (
                await session.execute(
                    update(Deposit)
                    .where(Deposit.id == deposit_id, Deposit.status == DepositStatus.CONFIRMED.value)
                    .values(status=DepositStatus.CREDITED.value, credited_at=self._clock())
                    .returning(Deposit.user_id, Deposit.amount, Deposit.external_tx_id)
                    .execution_options(synchronize_session=False)
                )
            ).one_or_none()

            if claimed is None:
                deposit = await session.get(Deposit, deposit_id)
                if deposit is None:
                    raise NotFoundError(f"Deposit {deposit_id} not found", user_message="Deposit not found.")
                if deposit.status == DepositStatus.CREDITED.value:
                    logger.info(f"DEPOSIT_ALREADY_CREDITED: id={deposit_id} tx={deposit.external_tx_id}")
                    return deposit
                raise ValidationError(f"Deposit {deposit_id} is still reserved and cannot be credited")

            user_id, amount, tx_id = claimed
            new_balance = await self.balance_ledger.credit(user_id, amount, deposit_reason(tx_id), session=session)
            deposit = await session.get(Deposit, deposit_id)

        logger.info(
            f"✅ DEPOSIT_CREDITED: id={deposit_id} tx={tx_id} user={user_id} "
            f"amount={amount} balance={new_balance}"
        )
        return deposit

    async def list_uncredited_deposits(self, older_than: Optional[timedelta] = None) -> List[Deposit]:
        """Confirmed deposits whose credit never committed, oldest first"""
        cutoff = self._clock() - (older_than or timedelta(0))
        async with get_async_session(self.session_factory) as session:
            result = await session.execute(
                select(Deposit)
                .where(Deposit.status == DepositStatus.CONFIRMED.value, Deposit.confirmed_at <= cutoff)
                .order_by(Deposit.confirmed_at)
            )
            return list(result.scalars().all())

    async def get_deposit_history(self, user_id: int, limit: int = 20) -> List[Deposit]:
        """Verified deposits for a user, newest first"""
        async with get_async_session(self.session_factory) as session:
            result = await session.execute(
                select(Deposit)
                .where(Deposit.user_id == user_id, Deposit.status != DepositStatus.RESERVED.value)
                .order_by(Deposit.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_total_deposits(self, user_id: int) -> Decimal:
        async with get_async_session(self.session_factory) as session:
            total = (
                await session.execute(
                    select(func.coalesce(func.sum(Deposit.amount), 0, type_=Amount)).where(
                        Deposit.user_id == user_id, Deposit.status == DepositStatus.CREDITED.value
                    )
                )
            ).scalar_one()
        return MonetaryDecimal.quantize_ledger(total)

    # ------------------------------------------------------------------
    # Reservation
    # ------------------------------------------------------------------

    async def _reserve(self, tx_id: str) -> str:
        """Insert-or-fail on the transaction id; returns the reservation token"""
        reservation_token = str(uuid.uuid4())
        try:
            async with get_async_session(self.session_factory) as session:
                session.add(
                    Deposit(
                        external_tx_id=tx_id,
                        status=DepositStatus.RESERVED.value,
                        reservation_token=reservation_token,
                        reserved_at=self._clock(),
                    )
                )
                await session.flush()
        except IntegrityError:
            if await self._take_over_stale_reservation(tx_id, reservation_token):
                return reservation_token
            logger.info(f"🔁 DEPOSIT_DUPLICATE: {tx_id} already reserved or processed")
            raise DuplicateError(f"Transaction {tx_id} has already been processed")

        logger.info(f"🔒 DEPOSIT_RESERVED: {tx_id}")
        return reservation_token

    async def _take_over_stale_reservation(self, tx_id: str, reservation_token: str) -> bool:
        """Claim a reservation abandoned by a crashed verification"""
        now = self._clock()
        cutoff = now - timedelta(seconds=self.reservation_ttl_seconds)
        async with get_async_session(self.session_factory) as session:
            taken = (
                await session.execute(
                    update(Deposit)
                    .where(
                        Deposit.external_tx_id == tx_id,
                        Deposit.status == DepositStatus.RESERVED.value,
                        Deposit.reserved_at < cutoff,
                    )
                    .values(reservation_token=reservation_token, reserved_at=now)
                    .returning(Deposit.id)
                    .execution_options(synchronize_session=False)
                )
            ).scalar_one_or_none()
        if taken is not None:
            logger.warning(f"⚠️ DEPOSIT_RESERVATION_TAKEN_OVER: {tx_id} (older than {self.reservation_ttl_seconds}s)")
            return True
        return False

    async def _release(self, tx_id: str, reservation_token: str) -> None:
        """Delete our reservation so the id can be verified again"""
        try:
            async with get_async_session(self.session_factory) as session:
                await session.execute(
                    delete(Deposit)
                    .where(
                        Deposit.external_tx_id == tx_id,
                        Deposit.reservation_token == reservation_token,
                        Deposit.status == DepositStatus.RESERVED.value,
                    )
                    .execution_options(synchronize_session=False)
                )
            logger.info(f"🔓 DEPOSIT_RESERVATION_RELEASED: {tx_id}")
        except SQLAlchemyError as e:
            # Release failure is not surfaced: the caller re-raises the original error
            # and the row is freed once it is older than the reservation TTL
            logger.error(f"❌ DEPOSIT_RESERVATION_RELEASE_FAILED: {tx_id}: {e}")

    async def _confirm(
        self, tx_id: str, reservation_token: str, user_id: int, transfer: VerifiedTransfer
    ) -> int:
        """Turn our reservation into a confirmed deposit owned by user_id"""
        async with get_async_session(self.session_factory) as session:
            deposit_id = (
                await session.execute(
                    update(Deposit)
                    .where(
                        Deposit.external_tx_id == tx_id,
                        Deposit.reservation_token == reservation_token,
                        Deposit.status == DepositStatus.RESERVED.value,
                    )
                    .values(
                        status=DepositStatus.CONFIRMED.value,
                        user_id=user_id,
                        amount=transfer.amount,
                        token_id=self.token_id,
                        sender_account=transfer.sender_account,
                        external_timestamp=transfer.consensus_timestamp,
                        confirmed_at=self._clock(),
                    )
                    .returning(Deposit.id)
                    .execution_options(synchronize_session=False)
                )
            ).scalar_one_or_none()

        if deposit_id is None:
            # Our reservation expired and another verification took it over
            raise DuplicateError(f"Transaction {tx_id} is being processed by another request")

        logger.info(f"DEPOSIT_CONFIRMED: id={deposit_id} tx={tx_id} user={user_id} amount={transfer.amount}")
        return deposit_id

    # ------------------------------------------------------------------
    # Oracle + policy
    # ------------------------------------------------------------------

    async def _fetch(self, parsed: LedgerTransactionId) -> ExternalTransactionRecord:
        record = await call_oracle_with_retry(
            lambda: self.oracle.fetch_transaction(parsed.canonical),
            operation_name=f"fetch_transaction({parsed.canonical})",
            max_attempts=self.oracle_retry_attempts,
            initial_delay=self.oracle_retry_delay,
        )
        if record is None:
            raise NotFoundError(f"Transaction {parsed.canonical} not found on the ledger")
        return record

    def _check_policy(
        self, record: ExternalTransactionRecord, expected_amount: Optional[Decimal]
    ) -> VerifiedTransfer:
        if not record.succeeded:
            raise TransactionFailedError(
                f"Transaction {record.transaction_id} failed with result {record.result}",
                result_code=record.result,
            )

        incoming = record.find_incoming_transfer(self.treasury_account_id, self.token_id)
        if incoming is None:
            raise NoMatchingTransferError(
                f"No {self.token_id} transfer to treasury {self.treasury_account_id} "
                f"in transaction {record.transaction_id}"
            )

        amount = MonetaryDecimal.quantize_ledger(
            MonetaryDecimal.from_raw_units(incoming.amount, self.token_decimals)
        )
        if amount < self.min_amount:
            raise BelowMinimumError(amount, self.min_amount)
        if expected_amount is not None and not MonetaryDecimal.amounts_match(
            amount, expected_amount, self.amount_tolerance
        ):
            raise AmountMismatchError(amount, expected_amount)

        age = self._clock() - record.consensus_timestamp
        if age < -timedelta(seconds=self.max_clock_skew_seconds):
            raise ValidationError(
                f"Transaction {record.transaction_id} consensus timestamp is {-age} ahead of the server clock"
            )
        if age > timedelta(hours=self.recency_hours):
            raise StaleTransactionError(
                f"Transaction {record.transaction_id} is {age} old, window is {self.recency_hours}h",
                window_hours=self.recency_hours,
            )

        return VerifiedTransfer(
            amount=amount,
            sender_account=record.find_sender(self.token_id),
            consensus_timestamp=record.consensus_timestamp,
        )

    @staticmethod
    def _parse_expected_amount(value: Optional[Numeric]) -> Optional[Decimal]:
        if value is None:
            return None
        try:
            amount = MonetaryDecimal.to_decimal(value, "expected_amount")
        except ValueError as e:
            raise ValidationError(str(e))
        if amount <= 0:
            raise ValidationError(f"Expected amount must be positive, got {value}")
        return amount
