"""
Balance Ledger Service - the only code path allowed to change a user's balance

Credits and debits are single conditional UPDATE ... RETURNING statements, so
the database applies each mutation atomically:
- credit: balance = balance + amount (commutative, no precondition)
- debit: balance = balance - amount WHERE balance >= amount (floor check at
  commit time; two concurrent debits can never jointly overdraw)

Every mutation writes a BalanceJournalEntry with its reason tag in the same
transaction.
"""

import logging
import re
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import get_async_session
from models import BalanceChangeType, BalanceJournalEntry, User, utc_now
from utils.decimal_precision import MonetaryDecimal, Numeric
from utils.exceptions import InsufficientBalanceError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

REASON_PATTERN = re.compile(r"^(deposit|order|refund|adjustment):\S.*$")


def deposit_reason(external_tx_id: str) -> str:
    return f"deposit:{external_tx_id}"


def order_reason(order_code: str) -> str:
    return f"order:{order_code}"


def refund_reason(order_code: str) -> str:
    return f"refund:{order_code}"


class BalanceLedgerService:
    """Atomic credit/debit against users.balance with a reason-tagged journal"""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory

    async def credit(
        self,
        user_id: int,
        amount: Numeric,
        reason: str,
        session: Optional[AsyncSession] = None,
    ) -> Decimal:
        """
        Add amount to the user's balance.

        When a session is passed the credit joins the caller's transaction and
        is committed (or rolled back) with it.

        Returns:
            The balance after the credit
        """
        credit_amount = self._validate(amount, reason)
        if session is not None:
            return await self._credit(session, user_id, credit_amount, reason)
        async with get_async_session(self.session_factory) as own_session:
            return await self._credit(own_session, user_id, credit_amount, reason)

    async def debit(
        self,
        user_id: int,
        amount: Numeric,
        reason: str,
        session: Optional[AsyncSession] = None,
    ) -> Decimal:
        """
        Subtract amount from the user's balance if, and only if, it stays >= 0.

        Raises:
            InsufficientBalanceError: balance < amount at commit time
            NotFoundError: unknown user
        """
        debit_amount = self._validate(amount, reason)
        if session is not None:
            return await self._debit(session, user_id, debit_amount, reason)
        async with get_async_session(self.session_factory) as own_session:
            return await self._debit(own_session, user_id, debit_amount, reason)

    async def get_balance(self, user_id: int) -> Decimal:
        async with get_async_session(self.session_factory) as session:
            balance = (
                await session.execute(select(User.balance).where(User.id == user_id))
            ).scalar_one_or_none()
        if balance is None:
            raise NotFoundError(f"User {user_id} not found", user_message="User not found.")
        return MonetaryDecimal.quantize_ledger(balance)

    async def get_journal(self, user_id: int, limit: int = 50) -> List[BalanceJournalEntry]:
        """Most recent balance movements first"""
        async with get_async_session(self.session_factory) as session:
            result = await session.execute(
                select(BalanceJournalEntry)
                .where(BalanceJournalEntry.user_id == user_id)
                .order_by(BalanceJournalEntry.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _validate(amount: Numeric, reason: str) -> Decimal:
        try:
            value = MonetaryDecimal.quantize_ledger(amount)
        except ValueError as e:
            raise ValidationError(str(e))
        if value <= 0:
            raise ValidationError(f"Amount must be positive, got {amount}")
        if not reason or len(reason) > 160 or not REASON_PATTERN.match(reason):
            raise ValidationError(f"Invalid balance reason tag: {reason!r}")
        return value

    async def _credit(self, session: AsyncSession, user_id: int, amount: Decimal, reason: str) -> Decimal:
        result = await session.execute(
            update(User)
            .where(User.id == user_id)
            .values(balance=User.balance + amount, updated_at=utc_now())
            .returning(User.balance)
            .execution_options(synchronize_session=False)
        )
        new_balance = result.scalar_one_or_none()
        if new_balance is None:
            raise NotFoundError(f"Cannot credit unknown user {user_id}", user_message="User not found.")

        new_balance = MonetaryDecimal.quantize_ledger(new_balance)
        await self._journal(session, user_id, BalanceChangeType.CREDIT, amount, new_balance, reason)
        logger.info(f"💰 BALANCE_CREDIT: user={user_id} amount={amount} balance={new_balance} reason={reason}")
        return new_balance

    async def _debit(self, session: AsyncSession, user_id: int, amount: Decimal, reason: str) -> Decimal:
        result = await session.execute(
            update(User)
            .where(User.id == user_id, User.balance >= amount)
            .values(balance=User.balance - amount, updated_at=utc_now())
            .returning(User.balance)
            .execution_options(synchronize_session=False)
        )
        new_balance = result.scalar_one_or_none()

        if new_balance is None:
            current = (
                await session.execute(select(User.balance).where(User.id == user_id))
            ).scalar_one_or_none()
            if current is None:
                raise NotFoundError(f"Cannot debit unknown user {user_id}", user_message="User not found.")
            current = MonetaryDecimal.quantize_ledger(current)
            logger.warning(
                f"🚫 BALANCE_DEBIT_REJECTED: user={user_id} balance={current} requested={amount} reason={reason}"
            )
            raise InsufficientBalanceError(user_id, current, amount)

        new_balance = MonetaryDecimal.quantize_ledger(new_balance)
        await self._journal(session, user_id, BalanceChangeType.DEBIT, amount, new_balance, reason)
        logger.info(f"💸 BALANCE_DEBIT: user={user_id} amount={amount} balance={new_balance} reason={reason}")
        return new_balance

    @staticmethod
    async def _journal(
        session: AsyncSession,
        user_id: int,
        change_type: BalanceChangeType,
        amount: Decimal,
        balance_after: Decimal,
        reason: str,
    ) -> None:
        session.add(
            BalanceJournalEntry(
                user_id=user_id,
                change_type=change_type.value,
                amount=amount,
                balance_after=balance_after,
                reason=reason,
            )
        )
        await session.flush()
