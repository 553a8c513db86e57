"""
Order status state machine.

Admin table (TRANSITIONS):

    Pending    -> Processing, Cancelled
    Processing -> Shipped, Cancelled
    Shipped    -> Delivered
    Delivered, Cancelled, PaymentFailed -> (terminal)

AwaitingAuthentication is set only by the placement workflow while a 3-D Secure
challenge is open. Payment outcomes move orders through PAYMENT_TRANSITIONS,
which is never reachable from the admin API.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Callable, Mapping, Optional, Union

import structlog

from marketplace_orders.domain.errors import InvalidStatusError, InvalidTransitionError

if TYPE_CHECKING:
    from marketplace_orders.domain.models import Order

logger = structlog.get_logger(__name__)


class OrderStatus(str, Enum):
    """Order lifecycle states."""

    PENDING = "Pending"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    PAYMENT_FAILED = "PaymentFailed"
    AWAITING_AUTHENTICATION = "AwaitingAuthentication"


AVAILABLE_STATUSES: tuple[OrderStatus, ...] = (
    OrderStatus.PENDING,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
    OrderStatus.PAYMENT_FAILED,
)

TRANSITIONS: Mapping[OrderStatus, frozenset[OrderStatus]] = MappingProxyType(
    {
        OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
        OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
        OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
        OrderStatus.DELIVERED: frozenset(),
        OrderStatus.CANCELLED: frozenset(),
        OrderStatus.AWAITING_AUTHENTICATION: frozenset({OrderStatus.CANCELLED}),
    }
)

PAYMENT_TRANSITIONS: Mapping[OrderStatus, frozenset[OrderStatus]] = MappingProxyType(
    {
        OrderStatus.PENDING: frozenset(
            {
                OrderStatus.PROCESSING,
                OrderStatus.PAYMENT_FAILED,
                OrderStatus.AWAITING_AUTHENTICATION,
                OrderStatus.CANCELLED,
            }
        ),
        OrderStatus.AWAITING_AUTHENTICATION: frozenset(
            {OrderStatus.PROCESSING, OrderStatus.PAYMENT_FAILED, OrderStatus.CANCELLED}
        ),
    }
)

TERMINAL_STATUSES: frozenset[OrderStatus] = frozenset(
    {OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.PAYMENT_FAILED}
)


def parse_status(value: Union[str, OrderStatus]) -> OrderStatus:
    """Resolve an admin-supplied literal; only the six public statuses are accepted."""
    try:
        status = OrderStatus(value)
    except ValueError:
        raise InvalidStatusError(str(value))
    if status not in AVAILABLE_STATUSES:
        raise InvalidStatusError(status.value)
    return status


class OrderStateMachine:
    """Validates and applies order status changes. Holds no mutable state."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @staticmethod
    def available_statuses() -> list[str]:
        return [status.value for status in AVAILABLE_STATUSES]

    @staticmethod
    def can_transition(current: OrderStatus, requested: OrderStatus) -> bool:
        return requested in TRANSITIONS.get(current, frozenset())

    def transition(self, order: "Order", new_status: Union[str, OrderStatus]) -> "Order":
        """
        Apply an administrative status change.

        Raises:
            InvalidStatusError: Unknown status literal
            InvalidTransitionError: Pair not in the transition table
        """
        requested = parse_status(new_status)
        if not self.can_transition(order.status, requested):
            raise InvalidTransitionError(order.status.value, requested.value)
        return self._apply(order, requested)

    def apply_payment_outcome(self, order: "Order", new_status: OrderStatus) -> "Order":
        """Move an order in response to a payment result or its recovery."""
        allowed = PAYMENT_TRANSITIONS.get(order.status, frozenset())
        if new_status not in allowed:
            raise InvalidTransitionError(order.status.value, new_status.value)
        return self._apply(order, new_status)

    def _apply(self, order: "Order", new_status: OrderStatus) -> "Order":
        previous = order.status
        order.status = new_status
        order.last_status_change_at = self._clock()
        logger.debug(
            "order_status_changed",
            order_id=order.order_id,
            from_status=previous.value,
            to_status=new_status.value,
        )
        return order
