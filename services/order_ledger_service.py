"""
Order Ledger Service - order lifecycle with balance effects

    pending -> confirmed -> processing -> shipped -> delivered
    pending | confirmed | processing -> cancelled

Entering confirmed debits the order total; cancelling a confirmed or
processing order credits it back before the status flips. The status change
is a compare-and-set on the previous status in the same transaction as the
balance movement, so a lost race rolls the money back too.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Config
from database import get_async_session
from models import Order, OrderStatus, OrderStatusHistory, PaymentMethod, PaymentStatus, utc_now
from services.balance_ledger_service import BalanceLedgerService, order_reason, refund_reason
from services.notification_service import NotificationService
from utils.decimal_precision import MonetaryDecimal
from utils.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from utils.helpers import generate_order_code
from utils.order_state_machine import OrderStateValidator

logger = logging.getLogger(__name__)

ORDER_CODE_ATTEMPTS = 3


@dataclass
class OrderDraft:
    """Everything needed to persist a new order for an already resolved user"""
    user_id: int
    items: List[Dict[str, Any]]
    shipping_address: Dict[str, Any]
    payment_method: PaymentMethod
    payment_amount: Decimal
    subtotal: Decimal
    total: Decimal
    shipping: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    payment_currency: str = field(default_factory=lambda: Config.DEFAULT_ORDER_CURRENCY)
    payment_external_tx_id: Optional[str] = None
    source: Optional[str] = None
    notes: Optional[str] = None


class OrderLedgerService:
    """Create orders and move them through their lifecycle"""

    def __init__(
        self,
        balance_ledger: Optional[BalanceLedgerService] = None,
        session_factory: Optional[async_sessionmaker] = None,
        notifier: Optional[NotificationService] = None,
    ):
        self.session_factory = session_factory
        self.balance_ledger = balance_ledger or BalanceLedgerService(session_factory)
        self.notifier = notifier

    async def create_order(self, draft: OrderDraft, payment_verified: bool = False) -> Order:
        """
        Persist a new order.

        A verified payment starts the order at confirmed and debits the total
        in the same transaction; otherwise it starts pending with no balance
        movement.

        Raises:
            InsufficientBalanceError: verified payment but the balance cannot cover the total
        """
        if not draft.items:
            raise ValidationError("Order must contain at least one item")
        total = MonetaryDecimal.quantize_ledger(draft.total)
        if total < 0:
            raise ValidationError(f"Order total cannot be negative: {total}")

        for attempt in range(1, ORDER_CODE_ATTEMPTS + 1):
            order_code = generate_order_code()
            try:
                order = await self._insert_order(draft, order_code, total, payment_verified)
                break
            except IntegrityError:
                if attempt == ORDER_CODE_ATTEMPTS:
                    raise
                logger.warning(f"ORDER_CODE_COLLISION: {order_code}, generating a new code")

        logger.info(
            f"🛒 ORDER_CREATED: {order.order_code} user={order.user_id} status={order.status} "
            f"total={order.total} {order.payment_currency} method={order.payment_method}"
        )
        return order

    async def transition(
        self, order_code: str, new_status: str, reason: Optional[str] = None, owner_id: Optional[int] = None
    ) -> Order:
        """
        Move an order to new_status, applying its balance effect.

        When owner_id is given the order must belong to that user.

        Raises:
            NotFoundError: unknown order code, or the order belongs to someone else
            InvalidTransitionError: not allowed from the current status, or the
                order changed concurrently
            InsufficientBalanceError: confirming a pending order the balance cannot cover
        """
        if new_status not in {status.value for status in OrderStatus}:
            raise ValidationError(f"Unknown order status: {new_status}")

        async with get_async_session(self.session_factory) as session:
            order = await self._load(session, order_code)
            if owner_id is not None and order.user_id != owner_id:
                logger.warning(f"🚫 ORDER_OWNER_MISMATCH: {order_code} requested by user {owner_id}")
                raise NotFoundError(f"Order {order_code} not found for user {owner_id}", user_message="Order not found.")
            current_status = order.status

            if not OrderStateValidator.is_valid_transition(current_status, new_status):
                logger.warning(f"🚫 ORDER_TRANSITION_REJECTED: {order_code} {current_status} -> {new_status}")
                raise InvalidTransitionError(order_code, current_status, new_status)

            now = utc_now()
            values: Dict[str, Any] = {"status": new_status, "updated_at": now}
            balance_effect = None
            total = MonetaryDecimal.quantize_ledger(order.total)

            if OrderStateValidator.requires_refund(current_status, new_status):
                if total > 0:
                    await self.balance_ledger.credit(order.user_id, total, refund_reason(order_code), session=session)
                    balance_effect = total
                values["payment_status"] = PaymentStatus.REFUNDED.value
            elif OrderStateValidator.requires_debit(current_status, new_status):
                if total > 0:
                    await self.balance_ledger.debit(order.user_id, total, order_reason(order_code), session=session)
                    balance_effect = -total
                values["payment_status"] = PaymentStatus.CONFIRMED.value
                values["confirmed_at"] = now

            if new_status == OrderStatus.CANCELLED.value:
                values["cancelled_at"] = now

            changed = (
                await session.execute(
                    update(Order)
                    .where(Order.id == order.id, Order.status == current_status)
                    .values(**values)
                    .returning(Order.id)
                    .execution_options(synchronize_session=False)
                )
            ).scalar_one_or_none()
            if changed is None:
                # Lost a race with another transition; rolling back undoes the balance effect
                latest = (await session.execute(select(Order.status).where(Order.id == order.id))).scalar_one()
                raise InvalidTransitionError(order_code, latest, new_status)

            session.add(
                OrderStatusHistory(
                    order_id=order.id,
                    from_status=current_status,
                    to_status=new_status,
                    change_reason=(reason or f"status changed to {new_status}")[:160],
                    balance_effect=balance_effect,
                    changed_at=now,
                )
            )
            await session.flush()
            await session.refresh(order)

        logger.info(
            f"📦 ORDER_STATUS_CHANGED: {order_code} {current_status} -> {new_status} "
            f"at {now.isoformat()} balance_effect={balance_effect}"
        )
        if self.notifier is not None:
            await self.notifier.notify_order_status_changed(order, current_status)
        return order

    async def confirm_payment(self, order_code: str, reason: Optional[str] = None) -> Order:
        """pending -> confirmed, debiting the total"""
        return await self.transition(order_code, OrderStatus.CONFIRMED.value, reason or "payment confirmed")

    async def mark_processing(self, order_code: str) -> Order:
        return await self.transition(order_code, OrderStatus.PROCESSING.value, "order processing")

    async def mark_shipped(self, order_code: str) -> Order:
        return await self.transition(order_code, OrderStatus.SHIPPED.value, "order shipped")

    async def mark_delivered(self, order_code: str) -> Order:
        return await self.transition(order_code, OrderStatus.DELIVERED.value, "order delivered")

    async def cancel_order(self, order_code: str, user_id: int, reason: Optional[str] = None) -> Order:
        """Cancel on behalf of the order's owner; a paid order gets its total credited back first"""
        return await self.transition(
            order_code, OrderStatus.CANCELLED.value, reason or "order cancelled", owner_id=user_id
        )

    async def get_order(self, order_code: str) -> Order:
        async with get_async_session(self.session_factory) as session:
            return await self._load(session, order_code)

    async def list_user_orders(
        self, user_id: int, status: Optional[str] = None, limit: int = 50
    ) -> List[Order]:
        """User's orders, newest first"""
        query = select(Order).where(Order.user_id == user_id)
        if status:
            query = query.where(Order.status == status)
        async with get_async_session(self.session_factory) as session:
            result = await session.execute(query.order_by(Order.id.desc()).limit(limit))
            return list(result.scalars().all())

    async def get_status_history(self, order_code: str) -> List[OrderStatusHistory]:
        async with get_async_session(self.session_factory) as session:
            order = await self._load(session, order_code)
            result = await session.execute(
                select(OrderStatusHistory)
                .where(OrderStatusHistory.order_id == order.id)
                .order_by(OrderStatusHistory.id)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    async def _load(session: AsyncSession, order_code: str) -> Order:
        order = (
            await session.execute(select(Order).where(Order.order_code == order_code))
        ).scalar_one_or_none()
        if order is None:
            raise NotFoundError(f"Order {order_code} not found", user_message="Order not found.")
        return order

    async def _insert_order(
        self, draft: OrderDraft, order_code: str, total: Decimal, payment_verified: bool
    ) -> Order:
        status = OrderStatus.CONFIRMED.value if payment_verified else OrderStatus.PENDING.value
        if not OrderStateValidator.is_valid_transition(None, status):
            raise InvalidTransitionError(order_code, "new", status)

        now = utc_now()
        async with get_async_session(self.session_factory) as session:
            order = Order(
                order_code=order_code,
                user_id=draft.user_id,
                items=draft.items,
                shipping_address=draft.shipping_address,
                payment_method=draft.payment_method.value,
                payment_external_tx_id=draft.payment_external_tx_id,
                payment_amount=MonetaryDecimal.quantize_ledger(draft.payment_amount),
                payment_currency=draft.payment_currency,
                payment_status=PaymentStatus.CONFIRMED.value if payment_verified else PaymentStatus.PENDING.value,
                subtotal=MonetaryDecimal.quantize_ledger(draft.subtotal),
                shipping=MonetaryDecimal.quantize_ledger(draft.shipping),
                tax=MonetaryDecimal.quantize_ledger(draft.tax),
                discount=MonetaryDecimal.quantize_ledger(draft.discount),
                total=total,
                status=status,
                source=draft.source,
                notes=draft.notes,
                created_at=now,
                updated_at=now,
                confirmed_at=now if payment_verified else None,
            )
            session.add(order)
            await session.flush()

            balance_effect = None
            if OrderStateValidator.requires_debit(None, status) and total > 0:
                await self.balance_ledger.debit(draft.user_id, total, order_reason(order_code), session=session)
                balance_effect = -total

            session.add(
                OrderStatusHistory(
                    order_id=order.id,
                    from_status=None,
                    to_status=status,
                    change_reason="order created" + (" with verified payment" if payment_verified else ""),
                    balance_effect=balance_effect,
                    changed_at=now,
                )
            )
            await session.flush()
        return order
