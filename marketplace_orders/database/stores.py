"""
SQL implementations of the order workflow collaborators.

Every store in a SqlUnitOfWork shares one AsyncSession, so cart, stock, order
and outbox writes commit or roll back together.
"""
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Mapping, Optional

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from marketplace_orders.core.ports import UnitOfWorkFactory
from marketplace_orders.database import models as orm
from marketplace_orders.database.connection import get_session_factory
from marketplace_orders.domain.errors import InsufficientStockError, ProductNotFoundError
from marketplace_orders.domain.models import Cart, CartLine, CartOwner, Order, OrderItem, Product
from marketplace_orders.domain.status import OrderStatus

logger = structlog.get_logger(__name__)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _owner_filter(model: Any, owner: CartOwner) -> Any:
    if owner.user_id is not None:
        return model.user_id == owner.user_id
    return model.session_id == owner.session_id


def _to_order(row: orm.Order) -> Order:
    return Order(
        order_id=row.id,
        user_id=row.user_id,
        session_id=row.session_id,
        total_amount=row.total_amount,
        status=OrderStatus(row.status),
        order_date=_as_utc(row.order_date),
        last_status_change_at=_as_utc(row.last_status_change_at),
        payment_reference=row.payment_reference,
        transaction_id=row.transaction_id,
        items=tuple(
            OrderItem(
                order_item_id=item.id,
                order_id=row.id,
                product_id=item.product_id,
                quantity=item.quantity,
                price=item.price,
            )
            for item in row.items
        ),
    )


class SqlCartStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _load(self, owner: CartOwner) -> Optional[orm.Cart]:
        stmt = (
            select(orm.Cart)
            .options(selectinload(orm.Cart.items))
            .where(_owner_filter(orm.Cart, owner))
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    def _to_cart(owner: CartOwner, row: orm.Cart) -> Cart:
        return Cart(
            owner=owner,
            id=row.id,
            lines=[
                CartLine(
                    product_id=item.product_id,
                    quantity=item.quantity,
                    price_snapshot=item.price_snapshot,
                )
                for item in row.items
            ],
        )

    async def get_cart(self, owner: CartOwner) -> Optional[Cart]:
        row = await self._load(owner)
        if row is None:
            return None
        return self._to_cart(owner, row)

    async def clear_cart(self, owner: CartOwner) -> bool:
        row = await self._load(owner)
        if row is None:
            return False
        await self.session.execute(delete(orm.CartItem).where(orm.CartItem.cart_id == row.id))
        self.session.expire(row, ["items"])
        return True

    async def add_item(self, owner: CartOwner, product_id: int, quantity: int = 1) -> Cart:
        """
        Add ``quantity`` of a product, snapshotting its current price.

        Raises:
            ValueError: Non-positive quantity
            ProductNotFoundError: Unknown product
            InsufficientStockError: Not enough stock for the resulting line
        """
        if quantity <= 0:
            raise ValueError("Quantity must be greater than zero")

        product = await self.session.get(orm.Product, product_id)
        if product is None:
            raise ProductNotFoundError(product_id)

        row = await self._load(owner)
        if row is None:
            row = orm.Cart(user_id=owner.user_id, session_id=owner.session_id, items=[])
            self.session.add(row)

        existing = next((item for item in row.items if item.product_id == product_id), None)
        new_quantity = quantity + (existing.quantity if existing else 0)
        if product.stock_quantity < new_quantity:
            raise InsufficientStockError(product.name, product_id)

        if existing is None:
            row.items.append(
                orm.CartItem(
                    product_id=product_id,
                    quantity=new_quantity,
                    price_snapshot=product.price,
                )
            )
        else:
            existing.quantity = new_quantity
            existing.price_snapshot = product.price

        await self.session.flush()
        return self._to_cart(owner, row)

    async def update_quantity(self, owner: CartOwner, product_id: int, quantity: int) -> Cart:
        """Set a line's quantity; zero or less removes the line."""
        row = await self._load(owner)
        if row is None:
            raise ProductNotFoundError(product_id)
        existing = next((item for item in row.items if item.product_id == product_id), None)
        if existing is None:
            raise ProductNotFoundError(product_id)

        if quantity <= 0:
            row.items.remove(existing)
        else:
            product = await self.session.get(orm.Product, product_id)
            if product is None:
                raise ProductNotFoundError(product_id)
            if product.stock_quantity < quantity:
                raise InsufficientStockError(product.name, product_id)
            existing.quantity = quantity
            existing.price_snapshot = product.price

        await self.session.flush()
        return self._to_cart(owner, row)


class SqlStockLedger:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_product(self, product_id: int) -> Optional[Product]:
        stmt = (
            select(orm.Product)
            .where(orm.Product.id == product_id)
            .execution_options(populate_existing=True)
        )
        row = (await self.session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return Product(
            id=row.id, name=row.name, price=row.price, stock_quantity=row.stock_quantity
        )

    async def decrement_stock(self, product_id: int, amount: int) -> bool:
        stmt = (
            update(orm.Product)
            .where(orm.Product.id == product_id, orm.Product.stock_quantity >= amount)
            .values(stock_quantity=orm.Product.stock_quantity - amount)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        decremented = result.rowcount == 1
        if not decremented:
            logger.warning("stock_decrement_rejected", product_id=product_id, amount=amount)
        return decremented


class SqlOrderRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    def _select(self) -> Any:
        return (
            select(orm.Order)
            .options(selectinload(orm.Order.items))
            .execution_options(populate_existing=True)
        )

    async def add(self, order: Order) -> Order:
        row = orm.Order(
            user_id=order.user_id,
            session_id=order.session_id,
            order_date=order.order_date,
            last_status_change_at=order.last_status_change_at,
            total_amount=order.total_amount,
            status=order.status.value,
            payment_reference=order.payment_reference,
            transaction_id=order.transaction_id,
            items=[
                orm.OrderItem(product_id=item.product_id, quantity=item.quantity, price=item.price)
                for item in order.items
            ],
        )
        self.session.add(row)
        await self.session.flush()

        order.order_id = row.id
        order.items = tuple(
            replace(item, order_item_id=item_row.id, order_id=row.id)
            for item, item_row in zip(order.items, row.items)
        )
        return order

    async def save(self, order: Order) -> Order:
        row = await self.session.get(orm.Order, order.order_id)
        if row is None:
            raise LookupError(f"Order {order.order_id} has not been added")
        row.status = order.status.value
        row.last_status_change_at = order.last_status_change_at
        row.transaction_id = order.transaction_id
        await self.session.flush()
        return order

    async def get(self, order_id: int) -> Optional[Order]:
        result = await self.session.execute(self._select().where(orm.Order.id == order_id))
        row = result.scalar_one_or_none()
        return _to_order(row) if row is not None else None

    async def get_by_reference(self, payment_reference: str) -> Optional[Order]:
        result = await self.session.execute(
            self._select().where(orm.Order.payment_reference == payment_reference)
        )
        row = result.scalar_one_or_none()
        return _to_order(row) if row is not None else None

    async def list_for_user(self, user_id: int) -> list[Order]:
        result = await self.session.execute(
            self._select()
            .where(orm.Order.user_id == user_id)
            .order_by(orm.Order.order_date.desc(), orm.Order.id.desc())
        )
        return [_to_order(row) for row in result.scalars().all()]

    async def list_stale(
        self, status: OrderStatus, changed_before: datetime, limit: int = 100
    ) -> list[Order]:
        result = await self.session.execute(
            self._select()
            .where(
                orm.Order.status == status.value,
                orm.Order.last_status_change_at < changed_before,
            )
            .order_by(orm.Order.last_status_change_at)
            .limit(limit)
        )
        return [_to_order(row) for row in result.scalars().all()]

    async def record_event(
        self, order: Order, event_type: str, payload: Mapping[str, Any]
    ) -> None:
        self.session.add(
            orm.OutboxEvent(
                aggregate_id=str(order.order_id),
                aggregate_type="order",
                event_type=event_type,
                payload=dict(payload),
            )
        )


class SqlUnitOfWork:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.carts = SqlCartStore(session)
        self.stock = SqlStockLedger(session)
        self.orders = SqlOrderRepository(session)

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()


def sql_unit_of_work(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> UnitOfWorkFactory:
    """
    Build a unit-of-work factory over ``session_factory``.

    Anything not explicitly committed is rolled back when the block exits.
    """

    @asynccontextmanager
    async def unit_of_work() -> AsyncIterator[SqlUnitOfWork]:
        factory = session_factory or get_session_factory()
        async with factory() as session:
            uow = SqlUnitOfWork(session)
            try:
                yield uow
            except BaseException:
                await session.rollback()
                raise

    return unit_of_work
