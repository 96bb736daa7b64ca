"""
Treasury Deposit & Balance Ledger - Database Schema
===================================================

Durable records for the custodial balance core:
- users: one identity per person, reachable by wallet / chat id / email
- deposits: one row per external ledger transaction, ever (dedup key)
- balance_journal: append-only trail of every credit and debit
- orders + order_status_history: purchases and their lifecycle

The balance on `users` is the single source of truth for spendable funds.
Deposits, journal rows and orders are the audit trail around it.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger, Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer,
    JSON, Numeric, String, Text, TypeDecorator,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from utils.decimal_precision import MonetaryDecimal

# SQLite only auto-increments INTEGER PRIMARY KEY columns
BigIntegerPK = BigInteger().with_variant(Integer, "sqlite")

# SQLite money columns hold an integer count of 10**-8 units
LEDGER_PLACES = 8


class LedgerAmount(TypeDecorator):
    """
    Numeric(20, 8) money column.

    SQLite keeps NUMERIC values as REAL, so 0.3 - 0.1 - 0.2 would not come
    back as zero and `balance >= amount` floor checks would drift. There the
    column holds the amount scaled to an integer instead, and bound values
    in comparisons and arithmetic are scaled the same way, so the database
    compares exact integers. Other dialects store plain NUMERIC.
    """

    impl = Numeric
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(BigInteger())
        return dialect.type_descriptor(self.impl)

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = MonetaryDecimal.quantize_ledger(value)
        if dialect.name == "sqlite":
            return int(value.scaleb(LEDGER_PLACES))
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if dialect.name == "sqlite":
            return Decimal(int(value)).scaleb(-LEDGER_PLACES)
        return MonetaryDecimal.quantize_ledger(value)


# 20 digits / 8 decimal places for every balance and amount column
Amount = LedgerAmount(20, 8, asdecimal=True)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class OnboardingChannel(Enum):
    """Front-end channel a user was first seen on"""
    TELEGRAM = "telegram"
    WALLET = "wallet"
    WEB = "web"
    ASSISTANT = "assistant"


class DepositStatus(Enum):
    """
    Deposit row lifecycle

    RESERVED rows are dedup reservations held while a verification runs.
    CONFIRMED rows passed every policy check but the balance credit has not
    committed yet (reconciliation picks these up). CREDITED is final.
    """
    RESERVED = "reserved"
    CONFIRMED = "confirmed"
    CREDITED = "credited"


class BalanceChangeType(Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class OrderStatus(Enum):
    """Order lifecycle - values are a stable wire contract"""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentMethod(Enum):
    """How an order is paid"""
    BALANCE = "balance"          # Debit the internal custodial balance
    USDC_WALLET = "usdc_wallet"  # On-ledger token transfer to the treasury
    CARD = "card"
    CRYPTO = "crypto"


class PaymentStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REFUNDED = "refunded"


def _enum_values(enum_cls) -> str:
    return ", ".join(f"'{member.value}'" for member in enum_cls)


# ============================================================================
# MODELS
# ============================================================================

class User(Base):
    """Identity record - any of wallet, chat id or email identifies the user"""
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)

    # Interchangeable identifiers (stored normalized, see utils.normalizers)
    wallet_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, unique=True)
    chat_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True, unique=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)

    # Profile
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    onboarding_channel: Mapped[str] = mapped_column(String(20), nullable=False, default=OnboardingChannel.WEB.value)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    email_notifications: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Spendable custodial balance - mutate only through BalanceLedgerService
    balance: Mapped[Decimal] = mapped_column(Amount, default=Decimal("0"), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_users_balance_non_negative"),
        CheckConstraint(
            "wallet_address IS NOT NULL OR chat_id IS NOT NULL OR email IS NOT NULL",
            name="ck_users_has_identifier",
        ),
        CheckConstraint(f"onboarding_channel IN ({_enum_values(OnboardingChannel)})", name="ck_users_channel_valid"),
    )

    def identifiers(self) -> dict:
        return {"wallet_address": self.wallet_address, "chat_id": self.chat_id, "email": self.email}

    def __repr__(self):
        return f"<User(id={self.id}, wallet={self.wallet_address}, chat={self.chat_id}, email={self.email})>"


class Deposit(Base):
    """
    Verified credit event derived from one external ledger transaction.

    The unique constraint on external_tx_id is the dedup reservation: a row is
    inserted (status=reserved) before anything is fetched or credited, and
    deleted again if verification fails.
    """
    __tablename__ = "deposits"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    external_tx_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    user_id: Mapped[Optional[int]] = mapped_column(BigInteger, ForeignKey("users.id"), nullable=True, index=True)

    amount: Mapped[Optional[Decimal]] = mapped_column(Amount, nullable=True)
    token_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    sender_account: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    external_timestamp: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    status: Mapped[str] = mapped_column(String(20), default=DepositStatus.RESERVED.value, nullable=False, index=True)
    reservation_token: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    reserved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    credited_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(f"status IN ({_enum_values(DepositStatus)})", name="ck_deposits_status_valid"),
        CheckConstraint(
            "status = 'reserved' OR (user_id IS NOT NULL AND amount IS NOT NULL)",
            name="ck_deposits_confirmed_complete",
        ),
        CheckConstraint("amount IS NULL OR amount > 0", name="ck_deposits_amount_positive"),
        Index("ix_deposits_user_status", "user_id", "status"),
    )

    def __repr__(self):
        return f"<Deposit(id={self.id}, tx={self.external_tx_id}, status={self.status}, amount={self.amount})>"


class BalanceJournalEntry(Base):
    """Append-only record of every balance mutation with its reason tag"""
    __tablename__ = "balance_journal"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id"), nullable=False)
    change_type: Mapped[str] = mapped_column(String(10), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    # deposit:<external tx id> | order:<order code> | refund:<order code> | adjustment:<note>
    reason: Mapped[str] = mapped_column(String(160), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint(f"change_type IN ({_enum_values(BalanceChangeType)})", name="ck_journal_change_type_valid"),
        CheckConstraint("amount > 0", name="ck_journal_amount_positive"),
        CheckConstraint("balance_after >= 0", name="ck_journal_balance_after_non_negative"),
        Index("ix_balance_journal_user_created", "user_id", "created_at"),
    )

    def __repr__(self):
        return f"<BalanceJournalEntry(user={self.user_id}, {self.change_type} {self.amount}, reason={self.reason})>"


class Order(Base):
    """Purchase placed through any channel"""
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    order_code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)

    # [{"product_ref", "name", "quantity", "unit_price"}], prices serialized as strings
    items: Mapped[list] = mapped_column(JSON, nullable=False)
    shipping_address: Mapped[dict] = mapped_column(JSON, nullable=False)

    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)
    payment_external_tx_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    payment_amount: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    payment_currency: Mapped[str] = mapped_column(String(10), nullable=False)
    payment_status: Mapped[str] = mapped_column(String(20), default=PaymentStatus.PENDING.value, nullable=False)

    subtotal: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    shipping: Mapped[Decimal] = mapped_column(Amount, default=Decimal("0"), nullable=False)
    tax: Mapped[Decimal] = mapped_column(Amount, default=Decimal("0"), nullable=False)
    discount: Mapped[Decimal] = mapped_column(Amount, default=Decimal("0"), nullable=False)
    total: Mapped[Decimal] = mapped_column(Amount, nullable=False)

    status: Mapped[str] = mapped_column(String(20), default=OrderStatus.PENDING.value, nullable=False, index=True)
    source: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(f"status IN ({_enum_values(OrderStatus)})", name="ck_orders_status_valid"),
        CheckConstraint(f"payment_method IN ({_enum_values(PaymentMethod)})", name="ck_orders_payment_method_valid"),
        CheckConstraint("total >= 0", name="ck_orders_total_non_negative"),
        Index("ix_orders_user_created", "user_id", "created_at"),
    )

    def __repr__(self):
        return f"<Order(code={self.order_code}, user={self.user_id}, status={self.status}, total={self.total})>"


class OrderStatusHistory(Base):
    """Audit trail for every order status change"""
    __tablename__ = "order_status_history"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("orders.id"), nullable=False, index=True)
    from_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)  # null for creation
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    change_reason: Mapped[str] = mapped_column(String(160), nullable=False)
    # Signed balance movement caused by this transition (debit negative, refund positive)
    balance_effect: Mapped[Optional[Decimal]] = mapped_column(Amount, nullable=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)

    def __repr__(self):
        return f"<OrderStatusHistory(order_id={self.order_id}, {self.from_status} -> {self.to_status})>"
