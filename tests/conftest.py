"""
Shared fixtures for the treasury ledger test suite

Key components:
1. Per-test SQLite database file (aiosqlite) built from Base.metadata
2. FakeOracle implementing the ledger oracle contract in memory
3. Service fixtures wired to the test database
4. Factories for users with a starting balance and for ledger transaction records
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Optional

import pytest
import pytest_asyncio

from database import build_async_engine, build_session_factory, create_tables
from models import User
from services.balance_ledger_service import BalanceLedgerService
from services.deposit_verification_service import DepositVerificationService
from services.identity_resolver import IdentityResolverService
from services.ledger_oracle_service import ExternalTransactionRecord, LedgerTransfer
from services.notification_service import NotificationService
from services.order_ledger_service import OrderLedgerService
from services.purchase_orchestrator import PurchaseOrchestrator
from utils.exceptions import OracleUnavailableError
from utils.normalizers import normalize_transaction_id

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

TREASURY_ACCOUNT = "0.0.654321"
TOKEN_ID = "T1"
SENDER_ACCOUNT = "0.0.777"


def make_record(
    tx_id: str,
    raw_amount: int = 5_000_000,
    token_id: str = TOKEN_ID,
    to_account: str = TREASURY_ACCOUNT,
    sender: str = SENDER_ACCOUNT,
    result: str = "SUCCESS",
    age: timedelta = timedelta(minutes=5),
) -> ExternalTransactionRecord:
    """A token transfer from sender to to_account, consensus `age` ago"""
    return ExternalTransactionRecord(
        transaction_id=normalize_transaction_id(tx_id),
        result=result,
        consensus_timestamp=datetime.now(timezone.utc) - age,
        transfers=(
            LedgerTransfer(account=sender, amount=-raw_amount, token_id=token_id),
            LedgerTransfer(account=to_account, amount=raw_amount, token_id=token_id),
            LedgerTransfer(account=sender, amount=-100_000),
        ),
        payer_account_id=sender,
    )


class FakeOracle:
    """In-memory ledger oracle keyed by canonical transaction id"""

    def __init__(self):
        self.records: Dict[str, ExternalTransactionRecord] = {}
        self.calls = []
        self.unavailable_calls = 0
        self.delay = 0.0

    def add(self, record: ExternalTransactionRecord) -> ExternalTransactionRecord:
        self.records[record.transaction_id] = record
        return record

    async def fetch_transaction(self, transaction_id: str) -> Optional[ExternalTransactionRecord]:
        self.calls.append(transaction_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.unavailable_calls > 0:
            self.unavailable_calls -= 1
            raise OracleUnavailableError("Indexer request timed out after 10s")
        return self.records.get(normalize_transaction_id(transaction_id))


@pytest_asyncio.fixture
async def engine(tmp_path):
    test_engine = build_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'treasury_test.db'}")
    await create_tables(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def fake_oracle():
    return FakeOracle()


@pytest.fixture
def identity_resolver(session_factory):
    return IdentityResolverService(session_factory)


@pytest.fixture
def balance_ledger(session_factory):
    return BalanceLedgerService(session_factory)


@pytest.fixture
def notifier():
    return NotificationService()


@pytest.fixture
def deposit_verifier(session_factory, fake_oracle, identity_resolver, balance_ledger):
    return DepositVerificationService(
        oracle=fake_oracle,
        identity_resolver=identity_resolver,
        balance_ledger=balance_ledger,
        session_factory=session_factory,
        treasury_account_id=TREASURY_ACCOUNT,
        token_id=TOKEN_ID,
        token_decimals=6,
        min_amount=Decimal("1"),
        amount_tolerance=Decimal("0.01"),
        recency_hours=24,
        reservation_ttl_seconds=300,
        max_clock_skew_seconds=300,
        oracle_retry_attempts=2,
        oracle_retry_delay=0,
    )


@pytest.fixture
def order_ledger(session_factory, balance_ledger, notifier):
    return OrderLedgerService(balance_ledger, session_factory, notifier=notifier)


@pytest.fixture
def purchase_orchestrator(identity_resolver, deposit_verifier, order_ledger, notifier):
    return PurchaseOrchestrator(identity_resolver, deposit_verifier, order_ledger, notifier)


@pytest.fixture
def create_user(identity_resolver, balance_ledger):
    """Factory: create a user by identifiers and seed its balance"""

    async def _create(balance: Decimal = Decimal("0"), **identifiers) -> User:
        if not identifiers:
            identifiers = {"email": f"user-{uuid.uuid4().hex[:8]}@example.com"}
        user = await identity_resolver.resolve(identifiers)
        if balance > 0:
            await balance_ledger.credit(user.id, balance, "adjustment:test-seed")
        return user

    return _create
