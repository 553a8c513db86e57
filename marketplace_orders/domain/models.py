"""
Order domain entities.

Plain dataclasses shared by the workflow, the SQL stores and the API layer.
Money is always Decimal.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from marketplace_orders.domain.status import OrderStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_payment_reference() -> str:
    """Reference sent to the gateway as idempotency key and charge metadata."""
    return f"order-{uuid.uuid4().hex}"


@dataclass(frozen=True)
class CartOwner:
    """A cart belongs to a signed-in user or to an anonymous session."""

    user_id: Optional[int] = None
    session_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.user_id is None and not self.session_id:
            raise ValueError("Cart owner needs a user id or a session id")

    @classmethod
    def for_user(cls, user_id: int) -> CartOwner:
        return cls(user_id=user_id)

    @classmethod
    def for_session(cls, session_id: str) -> CartOwner:
        return cls(session_id=session_id)

    @property
    def key(self) -> str:
        """Key used to serialize placements for this cart."""
        if self.user_id is not None:
            return f"user:{self.user_id}"
        return f"session:{self.session_id}"


@dataclass
class Product:
    id: int
    name: str
    price: Decimal
    stock_quantity: int


@dataclass(frozen=True)
class CartLine:
    """One product in a cart, priced at the moment it was added."""

    product_id: int
    quantity: int
    price_snapshot: Decimal

    def __post_init__(self) -> None:
        if self.quantity < 1:
            raise ValueError("Cart line quantity must be at least 1")

    @property
    def line_total(self) -> Decimal:
        return self.price_snapshot * self.quantity


@dataclass
class Cart:
    owner: CartOwner
    lines: list[CartLine] = field(default_factory=list)
    id: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return not self.lines


@dataclass(frozen=True)
class OrderItem:
    """Frozen copy of a cart line taken when the order is created."""

    product_id: int
    quantity: int
    price: Decimal
    order_item_id: Optional[int] = None
    order_id: Optional[int] = None

    @classmethod
    def from_cart_line(cls, line: CartLine) -> OrderItem:
        return cls(
            product_id=line.product_id,
            quantity=line.quantity,
            price=line.price_snapshot,
        )


@dataclass
class Order:
    """
    Order aggregate.

    ``order_date`` is fixed at creation; ``last_status_change_at`` moves with
    every status change. Items are a tuple and never change after creation.
    """

    user_id: Optional[int]
    total_amount: Decimal
    items: tuple[OrderItem, ...]
    status: OrderStatus = OrderStatus.PENDING
    order_id: Optional[int] = None
    session_id: Optional[str] = None
    order_date: datetime = field(default_factory=utcnow)
    last_status_change_at: datetime = field(default_factory=utcnow)
    payment_reference: str = field(default_factory=new_payment_reference)
    transaction_id: Optional[str] = None

    @classmethod
    def from_cart(cls, cart: Cart, now: Optional[datetime] = None) -> Order:
        """Build the Pending order shell from a validated cart snapshot."""
        now = now or utcnow()
        items = tuple(OrderItem.from_cart_line(line) for line in cart.lines)
        return cls(
            user_id=cart.owner.user_id,
            session_id=cart.owner.session_id,
            total_amount=calculate_total(cart.lines),
            items=items,
            status=OrderStatus.PENDING,
            order_date=now,
            last_status_change_at=now,
        )

    @property
    def owner(self) -> CartOwner:
        return CartOwner(user_id=self.user_id, session_id=self.session_id)


def calculate_total(lines: list[CartLine]) -> Decimal:
    """Sum of snapshot price times quantity; live catalog prices are ignored."""
    return sum((line.line_total for line in lines), Decimal("0"))


@dataclass
class PaymentResult:
    is_success: bool
    amount: Decimal
    transaction_id: str = ""
    message: str = ""
    payment_method: str = ""
    processed_at: datetime = field(default_factory=utcnow)
    requires_3d_secure: bool = False
    redirect_url: Optional[str] = None

    @classmethod
    def exhausted(cls, amount: Decimal) -> PaymentResult:
        """Synthetic failure returned once every attempt has been used."""
        return cls(
            is_success=False,
            amount=amount,
            transaction_id="",
            message="Payment failed after multiple attempts. Please try again later.",
            payment_method="Unknown",
        )

    def as_dict(self) -> dict:
        return {
            "is_success": self.is_success,
            "transaction_id": self.transaction_id,
            "message": self.message,
            "amount": str(self.amount),
            "payment_method": self.payment_method,
            "processed_at": self.processed_at.isoformat(),
            "requires_3d_secure": self.requires_3d_secure,
            "redirect_url": self.redirect_url,
        }


@dataclass
class CreateOrderResponse:
    order: Order
    payment_result: PaymentResult

    @property
    def requires_authentication(self) -> bool:
        return self.payment_result.requires_3d_secure
