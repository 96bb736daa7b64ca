#!/usr/bin/env python3
"""
Order State Machine
Allowed order status transitions and the balance effect attached to each
"""

import logging
from typing import Dict, Optional, Set

from models import OrderStatus

logger = logging.getLogger(__name__)


class OrderStateValidator:
    """Validates order state transitions and prevents invalid changes"""

    # Valid state transition map
    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {
        # Creation: pending for unpaid orders, confirmed for verified payments
        None: {OrderStatus.PENDING.value, OrderStatus.CONFIRMED.value},
        OrderStatus.PENDING.value: {
            OrderStatus.CONFIRMED.value,
            OrderStatus.CANCELLED.value,
        },
        OrderStatus.CONFIRMED.value: {
            OrderStatus.PROCESSING.value,
            OrderStatus.CANCELLED.value,  # Refunds the debit
        },
        OrderStatus.PROCESSING.value: {
            OrderStatus.SHIPPED.value,
            OrderStatus.CANCELLED.value,  # Refunds the debit
        },
        OrderStatus.SHIPPED.value: {
            OrderStatus.DELIVERED.value,
        },
        # Terminal states (no transitions allowed)
        OrderStatus.DELIVERED.value: set(),
        OrderStatus.CANCELLED.value: set(),
    }

    # Statuses in which the order total has been debited from the balance
    PAID_STATUSES: Set[str] = {
        OrderStatus.CONFIRMED.value,
        OrderStatus.PROCESSING.value,
        OrderStatus.SHIPPED.value,
        OrderStatus.DELIVERED.value,
    }

    @classmethod
    def is_valid_transition(cls, current_status: Optional[str], new_status: str) -> bool:
        """Check if state transition is valid"""
        return new_status in cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def get_valid_transitions(cls, current_status: Optional[str]) -> Set[str]:
        """Get all valid next states for current status"""
        return cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def is_terminal_state(cls, status: str) -> bool:
        """Check if status is terminal (no further transitions)"""
        return status in cls.VALID_TRANSITIONS and len(cls.VALID_TRANSITIONS[status]) == 0

    @classmethod
    def requires_debit(cls, current_status: Optional[str], new_status: str) -> bool:
        """Entering a paid status from an unpaid one takes the total from the balance"""
        return current_status not in cls.PAID_STATUSES and new_status in cls.PAID_STATUSES

    @classmethod
    def requires_refund(cls, current_status: Optional[str], new_status: str) -> bool:
        """Cancelling a paid order returns the total to the balance"""
        return current_status in cls.PAID_STATUSES and new_status == OrderStatus.CANCELLED.value
