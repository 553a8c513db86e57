"""
Collaborator interfaces consumed by the order workflow.

SQL-backed implementations live in ``marketplace_orders.database.stores``; the
Stripe-backed gateway lives in ``marketplace_orders.integrations``.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncContextManager, Callable, Mapping, Optional, Protocol

from marketplace_orders.domain.models import Cart, CartOwner, Order, PaymentResult, Product
from marketplace_orders.domain.status import OrderStatus


class CartStore(Protocol):
    async def get_cart(self, owner: CartOwner) -> Optional[Cart]:
        ...

    async def clear_cart(self, owner: CartOwner) -> bool:
        ...


class StockLedger(Protocol):
    async def get_product(self, product_id: int) -> Optional[Product]:
        ...

    async def decrement_stock(self, product_id: int, amount: int) -> bool:
        """Decrement only if ``amount`` is still available; False when rejected."""
        ...


class OrderRepository(Protocol):
    async def add(self, order: Order) -> Order:
        ...

    async def save(self, order: Order) -> Order:
        ...

    async def get(self, order_id: int) -> Optional[Order]:
        ...

    async def get_by_reference(self, payment_reference: str) -> Optional[Order]:
        ...

    async def list_for_user(self, user_id: int) -> list[Order]:
        ...

    async def list_stale(
        self, status: OrderStatus, changed_before: datetime, limit: int = 100
    ) -> list[Order]:
        ...

    async def record_event(
        self, order: Order, event_type: str, payload: Mapping[str, Any]
    ) -> None:
        """Stage an outbox event in the current transaction."""
        ...


class UnitOfWork(Protocol):
    """One database transaction spanning carts, stock and orders."""

    carts: CartStore
    stock: StockLedger
    orders: OrderRepository

    async def commit(self) -> None:
        ...

    async def rollback(self) -> None:
        ...


UnitOfWorkFactory = Callable[[], AsyncContextManager[UnitOfWork]]


class PaymentGateway(Protocol):
    async def charge(
        self,
        token: str,
        amount: Decimal,
        *,
        reference: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentResult:
        """May raise on transient gateway faults. The key defaults to ``reference``."""
        ...

    async def charge_with_3d_secure(
        self,
        token: str,
        amount: Decimal,
        return_url: str,
        *,
        reference: Optional[str] = None,
    ) -> PaymentResult:
        ...

    async def refund(self, transaction_id: str, amount: Decimal) -> str:
        ...

    async def retrieve(self, transaction_id: str) -> PaymentResult:
        ...

    async def find_by_reference(self, reference: str) -> Optional[PaymentResult]:
        ...


class AuditSink(Protocol):
    async def record(self, event: str, outcome: str, metadata: Mapping[str, Any]) -> None:
        ...
