"""
Pytest configuration and fixtures.
"""
import os

os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_fake_key_for_testing")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("PLACEMENT_LOCK_BACKEND", "local")
os.environ.setdefault("PAYMENT_MAX_ATTEMPTS", "3")
os.environ.setdefault("PAYMENT_BACKOFF_BASE", "2")

from typing import Any, AsyncGenerator  # noqa: E402
from unittest.mock import AsyncMock  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from marketplace_orders.config import Settings, get_settings  # noqa: E402
from marketplace_orders.core.locking import LocalPlacementLocks  # noqa: E402
from marketplace_orders.core.order_service import OrderService  # noqa: E402
from marketplace_orders.core.order_workflow import OrderPlacementWorkflow  # noqa: E402
from marketplace_orders.core.payment_processor import PaymentProcessor  # noqa: E402
from marketplace_orders.database.connection import build_session_factory  # noqa: E402
from marketplace_orders.database.models import Base  # noqa: E402
from marketplace_orders.domain.models import CartOwner  # noqa: E402
from tests.fakes import InMemoryStore, RecordingAuditSink  # noqa: E402

get_settings.cache_clear()


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        database_url="sqlite+aiosqlite:///:memory:",
        app_name="marketplace-orders-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest.fixture
def owner() -> CartOwner:
    return CartOwner.for_user(42)


@pytest.fixture
def store(owner: CartOwner) -> InMemoryStore:
    """Catalog with two products and a two-line cart for ``owner`` totalling 35.00."""
    store = InMemoryStore()
    store.add_product(1, "Mechanical Keyboard", "10.00", stock=5)
    store.add_product(2, "USB-C Cable", "5.00", stock=10)
    store.add_cart(owner, (1, 2, "10.00"), (2, 3, "5.00"))
    return store


@pytest.fixture
def gateway() -> AsyncMock:
    """Payment gateway double; tests script ``charge`` outcomes."""
    gateway = AsyncMock()
    gateway.refund.return_value = "re_test_123"
    gateway.find_by_reference.return_value = None
    return gateway


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def processor(gateway: AsyncMock, sleep: AsyncMock) -> PaymentProcessor:
    return PaymentProcessor(gateway, max_attempts=3, backoff_base=2, sleep=sleep)


@pytest.fixture
def audit() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def locks() -> LocalPlacementLocks:
    return LocalPlacementLocks()


@pytest.fixture
def workflow(
    store: InMemoryStore,
    processor: PaymentProcessor,
    audit: RecordingAuditSink,
    locks: LocalPlacementLocks,
) -> OrderPlacementWorkflow:
    return OrderPlacementWorkflow(
        unit_of_work=store.unit_of_work,
        payment_processor=processor,
        audit_sink=audit,
        locks=locks,
    )


@pytest.fixture
def order_service(store: InMemoryStore, audit: RecordingAuditSink) -> OrderService:
    return OrderService(unit_of_work=store.unit_of_work, audit_sink=audit)


@pytest_asyncio.fixture
async def session_factory(tmp_path: Any) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """Session factory over a fresh SQLite database file."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield build_session_factory(engine)

    await engine.dispose()
