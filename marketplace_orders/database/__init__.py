"""Database package for marketplace orders."""
from .connection import close_db, get_session_factory, init_db
from .models import (
    AuditLog,
    Base,
    Cart,
    CartItem,
    Order,
    OrderItem,
    OutboxEvent,
    Product,
)
from .stores import SqlUnitOfWork, sql_unit_of_work

__all__ = [
    "AuditLog",
    "Base",
    "Cart",
    "CartItem",
    "Order",
    "OrderItem",
    "OutboxEvent",
    "Product",
    "SqlUnitOfWork",
    "close_db",
    "get_session_factory",
    "init_db",
    "sql_unit_of_work",
]
