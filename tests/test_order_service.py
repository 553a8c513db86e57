"""
Unit tests for order queries and administrative status changes.
"""
from datetime import datetime, timedelta, timezone

import pytest

from marketplace_orders.core.order_service import OrderService
from marketplace_orders.domain.errors import (
    InvalidStatusError,
    InvalidTransitionError,
    OrderNotFoundError,
)
from marketplace_orders.domain.status import OrderStatus
from tests.fakes import FailingAuditSink, InMemoryStore, RecordingAuditSink


class TestUpdateOrderStatus:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_allowed_change_is_saved_with_event_and_audit(
        self, order_service: OrderService, store: InMemoryStore, audit: RecordingAuditSink
    ) -> None:
        order = store.add_order(
            OrderStatus.PROCESSING,
            changed_at=datetime.now(timezone.utc) - timedelta(hours=1),
            transaction_id="pi_1",
        )

        updated = await order_service.update_order_status(order.order_id, "Shipped", acting_user_id=7)

        assert updated.status == OrderStatus.SHIPPED
        assert store.orders[order.order_id].status == OrderStatus.SHIPPED
        assert updated.last_status_change_at > order.last_status_change_at
        assert updated.order_date == order.order_date

        events = store.events_of_type("order.status_changed")
        assert len(events) == 1
        assert events[0]["payload"]["status"] == "Shipped"

        assert audit.records == [
            {
                "event": "UPDATE_ORDER_STATUS",
                "outcome": "success",
                "order_id": order.order_id,
                "user_id": 7,
                "from_status": "Processing",
                "to_status": "Shipped",
            }
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancellation_emits_cancelled_event(
        self, order_service: OrderService, store: InMemoryStore
    ) -> None:
        order = store.add_order(OrderStatus.PENDING)

        await order_service.update_order_status(order.order_id, "Cancelled")

        assert store.orders[order.order_id].status == OrderStatus.CANCELLED
        assert len(store.events_of_type("order.cancelled")) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_literal_is_rejected_before_lookup(
        self, order_service: OrderService
    ) -> None:
        """An invalid status wins over a missing order."""
        with pytest.raises(InvalidStatusError):
            await order_service.update_order_status(999, "Teleported")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_workflow_only_status_is_not_an_admin_literal(
        self, order_service: OrderService, store: InMemoryStore
    ) -> None:
        order = store.add_order(OrderStatus.PENDING)

        with pytest.raises(InvalidStatusError):
            await order_service.update_order_status(order.order_id, "AwaitingAuthentication")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_order(self, order_service: OrderService) -> None:
        with pytest.raises(OrderNotFoundError):
            await order_service.update_order_status(999, "Shipped")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_disallowed_transition_leaves_order_untouched(
        self, order_service: OrderService, store: InMemoryStore, audit: RecordingAuditSink
    ) -> None:
        order = store.add_order(OrderStatus.DELIVERED)

        with pytest.raises(InvalidTransitionError):
            await order_service.update_order_status(order.order_id, "Pending")

        assert store.orders[order.order_id].status == OrderStatus.DELIVERED
        assert store.events == []
        assert audit.records == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_audit_failure_does_not_undo_change(self, store: InMemoryStore) -> None:
        service = OrderService(unit_of_work=store.unit_of_work, audit_sink=FailingAuditSink())
        order = store.add_order(OrderStatus.PROCESSING)

        updated = await service.update_order_status(order.order_id, "Cancelled")

        assert updated.status == OrderStatus.CANCELLED
        assert store.orders[order.order_id].status == OrderStatus.CANCELLED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_commit_keeps_previous_status(
        self, order_service: OrderService, store: InMemoryStore
    ) -> None:
        order = store.add_order(OrderStatus.PROCESSING)
        store.fail_commits_touching("save_order")

        with pytest.raises(RuntimeError):
            await order_service.update_order_status(order.order_id, "Shipped")

        assert store.orders[order.order_id].status == OrderStatus.PROCESSING
        assert store.events == []


class TestOrderQueries:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_history_is_newest_first_and_scoped_to_user(
        self, order_service: OrderService, store: InMemoryStore
    ) -> None:
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        oldest = store.add_order(changed_at=base)
        newest = store.add_order(changed_at=base + timedelta(days=2))
        middle = store.add_order(changed_at=base + timedelta(days=1))
        store.add_order(user_id=99, changed_at=base + timedelta(days=3))

        history = await order_service.get_order_history(42)

        assert [o.order_id for o in history] == [newest.order_id, middle.order_id, oldest.order_id]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_history_for_user_without_orders(self, order_service: OrderService) -> None:
        assert await order_service.get_order_history(42) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_details_include_items(
        self, order_service: OrderService, store: InMemoryStore
    ) -> None:
        order = store.add_order(lines=((1, 2, "10.00"), (2, 1, "5.00")))

        details = await order_service.get_order_details(order.order_id, user_id=42)

        assert details.order_id == order.order_id
        assert [(i.product_id, i.quantity) for i in details.items] == [(1, 2), (2, 1)]
        assert str(details.total_amount) == "25.00"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_details_hide_other_users_orders(
        self, order_service: OrderService, store: InMemoryStore
    ) -> None:
        order = store.add_order(user_id=99)

        with pytest.raises(OrderNotFoundError):
            await order_service.get_order_details(order.order_id, user_id=42)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_details_without_user_scope(
        self, order_service: OrderService, store: InMemoryStore
    ) -> None:
        order = store.add_order(user_id=99)

        details = await order_service.get_order_details(order.order_id)

        assert details.user_id == 99

    @pytest.mark.unit
    def test_available_statuses(self, order_service: OrderService) -> None:
        assert order_service.get_available_statuses() == [
            "Pending",
            "Processing",
            "Shipped",
            "Delivered",
            "Cancelled",
            "PaymentFailed",
        ]
