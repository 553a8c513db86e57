"""
Order domain errors.

Validation errors are raised before any side effect. PaymentFailedError is
raised after the failed order has been recorded. OrderFinalizationError means
money moved without a durable order and must page someone.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from marketplace_orders.domain.models import Order


class OrderError(Exception):
    """Base exception for order placement and lifecycle errors."""

    pass


class EmptyCartError(OrderError):
    """Raised when an order is placed from a missing or empty cart."""

    def __init__(self, message: str = "Cannot place order with empty cart"):
        super().__init__(message)


class ProductNotFoundError(OrderError):
    """Raised when a cart line references a product no longer in the catalog."""

    def __init__(self, product_id: int):
        super().__init__(f"Product with ID {product_id} not found")
        self.product_id = product_id


class InsufficientStockError(OrderError):
    """Raised when available stock cannot cover a cart line."""

    def __init__(self, product_name: str, product_id: Optional[int] = None):
        super().__init__(f"Insufficient stock for product {product_name}")
        self.product_name = product_name
        self.product_id = product_id


class InvalidStatusError(OrderError):
    """Raised for a status literal outside the known set."""

    def __init__(self, status: str):
        super().__init__(f"Invalid order status: {status}")
        self.status = status


class InvalidTransitionError(OrderError):
    """Raised when the transition table does not allow current -> requested."""

    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot transition from {current} to {requested}")
        self.current = current
        self.requested = requested


class OrderNotFoundError(OrderError):
    """Raised when an order id does not exist."""

    def __init__(self, order_id: int):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class PaymentFailedError(OrderError):
    """Raised when the charge was declined or retries were exhausted."""

    def __init__(self, message: str, order: Optional["Order"] = None):
        super().__init__(f"Payment failed: {message}")
        self.payment_message = message
        self.order = order


class PlacementInProgressError(OrderError):
    """Raised when another placement for the same cart holds the lock."""

    pass


class OrderFinalizationError(OrderError):
    """
    Raised when a captured payment could not be turned into a durable order.

    The recovery sweep resolves these orders by payment reference.
    """

    def __init__(
        self,
        order_id: Optional[int],
        transaction_id: str,
        payment_reference: str,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(
            f"Payment {transaction_id} captured but order {order_id} could not be finalized"
        )
        self.order_id = order_id
        self.transaction_id = transaction_id
        self.payment_reference = payment_reference
        self.cause = cause
