"""
Notification Service
Fan-out of user and order events to external collaborators (email, bots, admin feeds)

Delivery is best effort: a failing sink is logged and skipped, it never
raises into the caller and never rolls back the operation that emitted it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from models import Order, User, utc_now
from utils.helpers import format_amount, mask_identifier

logger = logging.getLogger(__name__)


class NotificationEvent(Enum):
    USER_ONBOARDED = "user_onboarded"
    ORDER_CREATED = "order_created"
    ORDER_STATUS_CHANGED = "order_status_changed"


@dataclass
class Notification:
    """Structured notification handed to every sink"""
    event: NotificationEvent
    user_id: int
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)


NotificationSink = Callable[[Notification], Awaitable[None]]


async def log_sink(notification: Notification) -> None:
    """Default sink: write the event to the application log"""
    logger.info(
        f"📣 NOTIFICATION_{notification.event.value.upper()}: user={notification.user_id} {notification.message}"
    )


class NotificationService:
    """Deliver notifications to every registered sink"""

    def __init__(self, sinks: Optional[List[NotificationSink]] = None):
        self._sinks: List[NotificationSink] = list(sinks) if sinks is not None else [log_sink]

    async def send(self, notification: Notification) -> int:
        """
        Deliver to all sinks.

        Returns:
            Number of sinks that accepted the notification
        """
        delivered = 0
        for sink in self._sinks:
            try:
                await sink(notification)
                delivered += 1
            except Exception as e:
                logger.error(
                    f"❌ NOTIFICATION_DELIVERY_FAILED: {notification.event.value} "
                    f"user={notification.user_id} sink={getattr(sink, '__name__', sink)}: {e}"
                )
        return delivered

    async def notify_user_onboarded(self, user: User) -> int:
        contact = user.email or user.wallet_address or (str(user.chat_id) if user.chat_id else "")
        return await self.send(
            Notification(
                event=NotificationEvent.USER_ONBOARDED,
                user_id=user.id,
                message=f"Welcome {user.display_name} (via {user.onboarding_channel}, {mask_identifier(contact)})",
                data={
                    "display_name": user.display_name,
                    "onboarding_channel": user.onboarding_channel,
                    "email": user.email,
                    "chat_id": user.chat_id,
                    "email_notifications": user.email_notifications,
                },
            )
        )

    async def notify_order_created(self, order: Order, user: User) -> int:
        return await self.send(
            Notification(
                event=NotificationEvent.ORDER_CREATED,
                user_id=user.id,
                message=(
                    f"Order {order.order_code} {order.status}: "
                    f"{format_amount(order.total, order.payment_currency)} via {order.payment_method}"
                ),
                data={
                    "order_code": order.order_code,
                    "status": order.status,
                    "total": str(order.total),
                    "currency": order.payment_currency,
                    "items": order.items,
                    "email": user.email,
                    "chat_id": user.chat_id,
                },
            )
        )

    async def notify_order_status_changed(self, order: Order, from_status: str) -> int:
        return await self.send(
            Notification(
                event=NotificationEvent.ORDER_STATUS_CHANGED,
                user_id=order.user_id,
                message=f"Order {order.order_code}: {from_status} -> {order.status}",
                data={
                    "order_code": order.order_code,
                    "from_status": from_status,
                    "status": order.status,
                },
            )
        )
