"""Order domain: entities, statuses and errors."""
from .errors import (
    EmptyCartError,
    InsufficientStockError,
    InvalidStatusError,
    InvalidTransitionError,
    OrderError,
    OrderFinalizationError,
    OrderNotFoundError,
    PaymentFailedError,
    PlacementInProgressError,
    ProductNotFoundError,
)
from .models import (
    Cart,
    CartLine,
    CartOwner,
    CreateOrderResponse,
    Order,
    OrderItem,
    PaymentResult,
    Product,
    calculate_total,
)
from .status import AVAILABLE_STATUSES, TRANSITIONS, OrderStateMachine, OrderStatus

__all__ = [
    "AVAILABLE_STATUSES",
    "TRANSITIONS",
    "Cart",
    "CartLine",
    "CartOwner",
    "CreateOrderResponse",
    "EmptyCartError",
    "InsufficientStockError",
    "InvalidStatusError",
    "InvalidTransitionError",
    "Order",
    "OrderError",
    "OrderFinalizationError",
    "OrderItem",
    "OrderNotFoundError",
    "OrderStateMachine",
    "OrderStatus",
    "PaymentFailedError",
    "PaymentResult",
    "PlacementInProgressError",
    "Product",
    "ProductNotFoundError",
    "calculate_total",
]
