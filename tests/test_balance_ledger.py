"""
Tests for atomic balance credits and debits
"""

import asyncio
from decimal import Decimal

import pytest

from services.balance_ledger_service import deposit_reason, order_reason, refund_reason
from utils.exceptions import InsufficientBalanceError, NotFoundError, ValidationError


class TestCreditAndDebit:

    @pytest.mark.asyncio
    async def test_credit_returns_new_balance(self, create_user, balance_ledger):
        user = await create_user()

        assert await balance_ledger.credit(user.id, Decimal("5"), deposit_reason("0.0.555-1000-000000001")) == Decimal("5")
        assert await balance_ledger.credit(user.id, "2.5", "adjustment:bonus") == Decimal("7.5")
        assert await balance_ledger.get_balance(user.id) == Decimal("7.5")

    @pytest.mark.asyncio
    async def test_debit_returns_new_balance(self, create_user, balance_ledger):
        user = await create_user(balance=Decimal("100"))

        assert await balance_ledger.debit(user.id, Decimal("30"), order_reason("ORD-2025-1")) == Decimal("70")

    @pytest.mark.asyncio
    async def test_debit_to_exactly_zero_is_allowed(self, create_user, balance_ledger):
        user = await create_user(balance=Decimal("12"))

        assert await balance_ledger.debit(user.id, Decimal("12"), order_reason("ORD-2025-2")) == Decimal("0")

    @pytest.mark.asyncio
    async def test_fractional_debits_drain_balance_exactly(self, create_user, balance_ledger):
        user = await create_user()
        await balance_ledger.credit(user.id, Decimal("0.3"), "adjustment:top-up")

        assert await balance_ledger.debit(user.id, Decimal("0.1"), order_reason("ORD-2025-3")) == Decimal("0.2")
        assert await balance_ledger.debit(user.id, Decimal("0.2"), order_reason("ORD-2025-4")) == Decimal("0")
        assert await balance_ledger.get_balance(user.id) == Decimal("0")

        journal = await balance_ledger.get_journal(user.id)
        assert journal[0].balance_after == Decimal("0")
        assert journal[0].amount == Decimal("0.2")

    @pytest.mark.asyncio
    async def test_overdraft_is_rejected_and_balance_unchanged(self, create_user, balance_ledger):
        user = await create_user(balance=Decimal("10"))

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await balance_ledger.debit(user.id, Decimal("10.01"), order_reason("ORD-2025-3"))

        assert exc_info.value.details["balance"] == Decimal("10")
        assert await balance_ledger.get_balance(user.id) == Decimal("10")

    @pytest.mark.asyncio
    async def test_unknown_user(self, balance_ledger):
        with pytest.raises(NotFoundError):
            await balance_ledger.credit(9999, Decimal("1"), "adjustment:test")
        with pytest.raises(NotFoundError):
            await balance_ledger.debit(9999, Decimal("1"), "adjustment:test")
        with pytest.raises(NotFoundError):
            await balance_ledger.get_balance(9999)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-1"), "abc", None])
    async def test_invalid_amount(self, create_user, balance_ledger, amount):
        user = await create_user()
        with pytest.raises(ValidationError):
            await balance_ledger.credit(user.id, amount, "adjustment:test")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reason", ["", "deposit", "gift:123", "order:"])
    async def test_reason_tag_is_required(self, create_user, balance_ledger, reason):
        user = await create_user()
        with pytest.raises(ValidationError):
            await balance_ledger.credit(user.id, Decimal("1"), reason)


class TestJournal:

    @pytest.mark.asyncio
    async def test_every_mutation_is_journaled(self, create_user, balance_ledger):
        user = await create_user()
        await balance_ledger.credit(user.id, Decimal("20"), deposit_reason("0.0.1-2-3"))
        await balance_ledger.debit(user.id, Decimal("12"), order_reason("ORD-2025-9"))
        await balance_ledger.credit(user.id, Decimal("12"), refund_reason("ORD-2025-9"))

        journal = await balance_ledger.get_journal(user.id)

        assert [(e.change_type, e.amount, e.balance_after, e.reason) for e in journal] == [
            ("credit", Decimal("12"), Decimal("20"), "refund:ORD-2025-9"),
            ("debit", Decimal("12"), Decimal("8"), "order:ORD-2025-9"),
            ("credit", Decimal("20"), Decimal("20"), "deposit:0.0.1-2-3"),
        ]

    @pytest.mark.asyncio
    async def test_rejected_debit_leaves_no_journal_entry(self, create_user, balance_ledger):
        user = await create_user()
        with pytest.raises(InsufficientBalanceError):
            await balance_ledger.debit(user.id, Decimal("1"), order_reason("ORD-2025-4"))

        assert await balance_ledger.get_journal(user.id) == []


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_concurrent_debits_never_overdraw(self, create_user, balance_ledger):
        user = await create_user(balance=Decimal("100"))

        results = await asyncio.gather(
            balance_ledger.debit(user.id, Decimal("80"), order_reason("ORD-2025-A")),
            balance_ledger.debit(user.id, Decimal("80"), order_reason("ORD-2025-B")),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, InsufficientBalanceError)]
        assert successes == [Decimal("20")]
        assert len(failures) == 1
        assert await balance_ledger.get_balance(user.id) == Decimal("20")

    @pytest.mark.asyncio
    async def test_concurrent_credits_all_apply(self, create_user, balance_ledger):
        user = await create_user()

        await asyncio.gather(*[
            balance_ledger.credit(user.id, Decimal("1.5"), f"adjustment:batch-{i}") for i in range(10)
        ])

        assert await balance_ledger.get_balance(user.id) == Decimal("15")
        assert len(await balance_ledger.get_journal(user.id)) == 10
