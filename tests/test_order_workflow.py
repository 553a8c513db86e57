"""
Unit tests for the order placement workflow.
"""
import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from marketplace_orders.core.order_workflow import OrderPlacementWorkflow, run_to_completion
from marketplace_orders.core.payment_processor import PaymentValidationError
from marketplace_orders.domain.errors import (
    EmptyCartError,
    InsufficientStockError,
    InvalidTransitionError,
    OrderFinalizationError,
    OrderNotFoundError,
    PaymentFailedError,
    ProductNotFoundError,
)
from marketplace_orders.domain.models import CartOwner
from marketplace_orders.domain.status import OrderStatus
from tests.fakes import (
    FailingAuditSink,
    InMemoryStore,
    RecordingAuditSink,
    approved,
    challenged,
    declined,
)

TOKEN = "tok_visa_4242424242"


class TestValidation:
    """Failures detected before any money moves."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_insufficient_stock_never_charges(
        self, workflow: OrderPlacementWorkflow, store: InMemoryStore, gateway: AsyncMock, owner: CartOwner
    ) -> None:
        """A line above live stock fails with InsufficientStockError and no charge."""
        store.products[1].stock_quantity = 1

        with pytest.raises(InsufficientStockError, match="Mechanical Keyboard"):
            await workflow.place_order(owner.user_id, TOKEN)

        gateway.charge.assert_not_awaited()
        assert store.orders == {}
        assert len(store.cart_lines(owner)) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_cart_is_rejected(
        self, workflow: OrderPlacementWorkflow, store: InMemoryStore, gateway: AsyncMock
    ) -> None:
        store.add_cart(CartOwner.for_user(7))

        with pytest.raises(EmptyCartError, match="Cannot place order with empty cart"):
            await workflow.place_order(7, TOKEN)

        gateway.charge.assert_not_awaited()
        assert store.orders == {}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_cart_is_rejected_as_empty(
        self, workflow: OrderPlacementWorkflow, gateway: AsyncMock
    ) -> None:
        with pytest.raises(EmptyCartError):
            await workflow.place_order(999, TOKEN)

        gateway.charge.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_product_is_rejected(
        self, workflow: OrderPlacementWorkflow, store: InMemoryStore, gateway: AsyncMock
    ) -> None:
        store.add_cart(CartOwner.for_user(8), (404, 1, "1.00"))

        with pytest.raises(ProductNotFoundError, match="Product with ID 404 not found"):
            await workflow.place_order(8, TOKEN)

        gateway.charge.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_blank_token_is_rejected_before_order_is_created(
        self, workflow: OrderPlacementWorkflow, store: InMemoryStore, gateway: AsyncMock, owner: CartOwner
    ) -> None:
        with pytest.raises(PaymentValidationError):
            await workflow.place_order(owner.user_id, "   ")

        gateway.charge.assert_not_awaited()
        assert store.orders == {}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejections_are_audited(
        self, workflow: OrderPlacementWorkflow, audit: RecordingAuditSink
    ) -> None:
        with pytest.raises(EmptyCartError):
            await workflow.place_order(999, TOKEN)

        assert audit.outcomes() == ["rejected"]
        assert audit.records[0]["user_id"] == 999


class TestSuccessfulPlacement:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_decrements_stock_and_clears_cart(
        self, workflow: OrderPlacementWorkflow, store: InMemoryStore, gateway: AsyncMock, owner: CartOwner
    ) -> None:
        """Stock drops by exactly the ordered quantities, the cart empties, items match the snapshot."""
        gateway.charge.return_value = approved(Decimal("35.00"), "pi_ok")

        response = await workflow.place_order(owner.user_id, TOKEN)

        order = response.order
        assert order.status == OrderStatus.PROCESSING
        assert order.transaction_id == "pi_ok"
        assert order.total_amount == Decimal("35.00")
        assert [(i.product_id, i.quantity, i.price) for i in order.items] == [
            (1, 2, Decimal("10.00")),
            (2, 3, Decimal("5.00")),
        ]
        assert store.stock_of(1) == 3
        assert store.stock_of(2) == 7
        assert store.cart_lines(owner) == []
        assert store.orders[order.order_id].status == OrderStatus.PROCESSING
        assert response.payment_result.is_success

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_single_line_order_leaves_exact_stock(
        self, workflow: OrderPlacementWorkflow, store: InMemoryStore, gateway: AsyncMock
    ) -> None:
        owner = CartOwner.for_user(5)
        store.add_product(3, "Monitor", "10.00", stock=10)
        store.add_cart(owner, (3, 2, "10.00"))
        gateway.charge.return_value = approved(Decimal("20.00"))

        response = await workflow.place_order(5, TOKEN)

        assert store.stock_of(3) == 8
        assert store.cart_lines(owner) == []
        assert len(response.order.items) == 1
        assert response.order.items[0].quantity == 2
        assert response.order.items[0].price == Decimal("10.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_total_uses_snapshot_not_live_price(
        self, workflow: OrderPlacementWorkflow, store: InMemoryStore, gateway: AsyncMock
    ) -> None:
        """Live price changes after add-to-cart do not change the charged total."""
        owner = CartOwner.for_user(6)
        store.add_product(3, "Monitor", "10.00", stock=10)
        store.add_cart(owner, (3, 1, "10.00"))
        store.products[3].price = Decimal("20.00")
        gateway.charge.return_value = approved(Decimal("10.00"))

        response = await workflow.place_order(6, TOKEN)

        assert response.order.total_amount == Decimal("10.00")
        assert gateway.charge.await_args.args[1] == Decimal("10.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_charge_carries_order_reference(
        self, workflow: OrderPlacementWorkflow, gateway: AsyncMock, owner: CartOwner
    ) -> None:
        gateway.charge.return_value = approved(Decimal("35.00"))

        response = await workflow.place_order(owner.user_id, TOKEN)

        assert gateway.charge.await_args.kwargs["reference"] == response.order.payment_reference

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retry_then_success_places_order(
        self, workflow: OrderPlacementWorkflow, store: InMemoryStore, gateway: AsyncMock, sleep: AsyncMock, owner: CartOwner
    ) -> None:
        """Two declines then success: three charges, 2s and 4s waits, one order."""
        gateway.charge.side_effect = [
            declined(Decimal("35.00")),
            ConnectionError("gateway timeout"),
            approved(Decimal("35.00"), "pi_third"),
        ]

        response = await workflow.place_order(owner.user_id, TOKEN)

        assert response.order.status == OrderStatus.PROCESSING
        assert gateway.charge.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [2, 4]
        assert len(store.orders) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_stages_order_placed_event(
        self, workflow: OrderPlacementWorkflow, store: InMemoryStore, gateway: AsyncMock, owner: CartOwner
    ) -> None:
        gateway.charge.return_value = approved(Decimal("35.00"), "pi_ok")

        response = await workflow.place_order(owner.user_id, TOKEN)

        events = store.events_of_type("order.placed")
        assert len(events) == 1
        assert events[0]["order_id"] == response.order.order_id
        assert events[0]["payload"]["transaction_id"] == "pi_ok"
        assert events[0]["payload"]["total_amount"] == "35.00"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_is_audited(
        self, workflow: OrderPlacementWorkflow, audit: RecordingAuditSink, gateway: AsyncMock, owner: CartOwner
    ) -> None:
        gateway.charge.return_value = approved(Decimal("35.00"), "pi_ok")

        response = await workflow.place_order(owner.user_id, TOKEN)

        assert audit.outcomes() == ["success"]
        assert audit.records[0]["order_id"] == response.order.order_id
        assert audit.records[0]["transaction_id"] == "pi_ok"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failing_audit_sink_does_not_affect_result(
        self, store: InMemoryStore, processor, gateway: AsyncMock, owner: CartOwner
    ) -> None:
        """Audit failures are logged and swallowed."""
        workflow = OrderPlacementWorkflow(store.unit_of_work, processor, audit_sink=FailingAuditSink())
        gateway.charge.return_value = approved(Decimal("35.00"))

        response = await workflow.place_order(owner.user_id, TOKEN)

        assert response.order.status == OrderStatus.PROCESSING
        assert store.orders[response.order.order_id].status == OrderStatus.PROCESSING
        assert store.stock_of(1) == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_guest_cart_can_be_ordered(
        self, workflow: OrderPlacementWorkflow, store: InMemoryStore, gateway: AsyncMock
    ) -> None:
        guest = CartOwner.for_session("sess-123")
        store.add_cart(guest, (2, 1, "5.00"))
        gateway.charge.return_value = approved(Decimal("5.00"))

        response = await workflow.place_order_for(guest, TOKEN)

        assert response.order.user_id is None
        assert response.order.session_id == "sess-123"
        assert store.cart_lines(guest) == []


class TestPaymentFailure:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_exhausted_retries_record_payment_failed(
        self, workflow: OrderPlacementWorkflow, store: InMemoryStore, gateway: AsyncMock, owner: CartOwner
    ) -> None:
        """All attempts fail: PaymentFailedError, order stored as PaymentFailed, stock and cart untouched."""
        gateway.charge.return_value = declined(Decimal("35.00"))

        with pytest.raises(PaymentFailedError) as exc_info:
            await workflow.place_order(owner.user_id, TOKEN)

        order = exc_info.value.order
        assert order is not None
        assert store.orders[order.order_id].status == OrderStatus.PAYMENT_FAILED
        assert exc_info.value.payment_message == (
            "Payment failed after multiple attempts. Please try again later."
        )
        assert gateway.charge.await_count == 3
        assert store.stock_of(1) == 5
        assert store.stock_of(2) == 10
        assert len(store.cart_lines(owner)) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_single_attempt_decline_leaves_stock_and_cart(
        self, workflow: OrderPlacementWorkflow, store: InMemoryStore, gateway: AsyncMock, owner: CartOwner
    ) -> None:
        gateway.charge.return_value = declined(Decimal("35.00"), "Insufficient funds")

        with pytest.raises(PaymentFailedError):
            await workflow.place_order(owner.user_id, TOKEN, max_attempts=1)

        assert gateway.charge.await_count == 1
        assert store.stock_of(1) == 5
        assert len(store.cart_lines(owner)) == 2
        assert len(store.events_of_type("order.payment_failed")) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_failure_is_audited(
        self, workflow: OrderPlacementWorkflow, audit: RecordingAuditSink, gateway: AsyncMock, owner: CartOwner
    ) -> None:
        gateway.charge.return_value = declined(Decimal("35.00"))

        with pytest.raises(PaymentFailedError):
            await workflow.place_order(owner.user_id, TOKEN)

        assert audit.outcomes() == ["payment_failed"]
        assert audit.records[0]["status"] == "PaymentFailed"


class TestThreeDSecurePlacement:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_challenge_parks_order_without_touching_stock(
        self, workflow: OrderPlacementWorkflow, store: InMemoryStore, gateway: AsyncMock, sleep: AsyncMock, owner: CartOwner
    ) -> None:
        gateway.charge.return_value = challenged(Decimal("35.00"), "pi_3ds", "https://bank.example/acs")

        response = await workflow.place_order(owner.user_id, TOKEN)

        assert response.requires_authentication
        assert response.payment_result.redirect_url == "https://bank.example/acs"
        assert response.order.status == OrderStatus.AWAITING_AUTHENTICATION
        assert response.order.transaction_id == "pi_3ds"
        assert gateway.charge.await_count == 1
        sleep.assert_not_awaited()
        assert store.stock_of(1) == 5
        assert len(store.cart_lines(owner)) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_completed_challenge_finalizes_order(
        self, workflow: OrderPlacementWorkflow, store: InMemoryStore, gateway: AsyncMock, owner: CartOwner
    ) -> None:
        gateway.charge.return_value = challenged(Decimal("35.00"), "pi_3ds")
        parked = await workflow.place_order(owner.user_id, TOKEN)
        gateway.retrieve.return_value = approved(Decimal("35.00"), "pi_3ds")

        response = await workflow.complete_authentication(parked.order.order_id)

        gateway.retrieve.assert_awaited_once_with("pi_3ds")
        assert response.order.status == OrderStatus.PROCESSING
        assert store.stock_of(1) == 3
        assert store.cart_lines(owner) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_challenge_records_payment_failed(
        self, workflow: OrderPlacementWorkflow, store: InMemoryStore, gateway: AsyncMock, owner: CartOwner
    ) -> None:
        gateway.charge.return_value = challenged(Decimal("35.00"), "pi_3ds")
        parked = await workflow.place_order(owner.user_id, TOKEN)
        gateway.retrieve.return_value = declined(Decimal("35.00"), "Authentication failed")

        with pytest.raises(PaymentFailedError, match="Authentication failed"):
            await workflow.complete_authentication(parked.order.order_id)

        assert store.orders[parked.order.order_id].status == OrderStatus.PAYMENT_FAILED
        assert store.stock_of(1) == 5

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pending_challenge_keeps_waiting(
        self, workflow: OrderPlacementWorkflow, store: InMemoryStore, gateway: AsyncMock, owner: CartOwner
    ) -> None:
        gateway.charge.return_value = challenged(Decimal("35.00"), "pi_3ds")
        parked = await workflow.place_order(owner.user_id, TOKEN)
        gateway.retrieve.return_value = challenged(Decimal("35.00"), "pi_3ds")

        response = await workflow.complete_authentication(parked.order.order_id)

        assert response.requires_authentication
        assert store.orders[parked.order.order_id].status == OrderStatus.AWAITING_AUTHENTICATION

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_completing_a_non_waiting_order_is_rejected(
        self, workflow: OrderPlacementWorkflow, gateway: AsyncMock, owner: CartOwner
    ) -> None:
        gateway.charge.return_value = approved(Decimal("35.00"))
        placed = await workflow.place_order(owner.user_id, TOKEN)

        with pytest.raises(InvalidTransitionError):
            await workflow.complete_authentication(placed.order.order_id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_completing_unknown_order_raises_not_found(
        self, workflow: OrderPlacementWorkflow
    ) -> None:
        with pytest.raises(OrderNotFoundError):
            await workflow.complete_authentication(12345)


class TestPostCaptureFailures:
    """Money moved; the workflow must leave a consistent or loudly failed state."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stock_taken_after_capture_is_refunded(
        self, workflow: OrderPlacementWorkflow, store: InMemoryStore, gateway: AsyncMock, audit: RecordingAuditSink, owner: CartOwner
    ) -> None:
        """A competing order empties stock between validation and finalization."""

        async def charge_while_stock_sells_out(*args, **kwargs):
            store.products[1].stock_quantity = 0
            return approved(Decimal("35.00"), "pi_race")

        gateway.charge.side_effect = charge_while_stock_sells_out

        with pytest.raises(InsufficientStockError):
            await workflow.place_order(owner.user_id, TOKEN)

        gateway.refund.assert_awaited_once_with("pi_race", Decimal("35.00"))
        order = next(iter(store.orders.values()))
        assert order.status == OrderStatus.CANCELLED
        assert order.transaction_id == "pi_race"
        assert store.stock_of(2) == 10
        assert len(store.cart_lines(owner)) == 2
        assert len(store.events_of_type("order.cancelled")) == 1
        assert "refunded" in audit.outcomes()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_compensating_refund_raises_finalization_error(
        self, workflow: OrderPlacementWorkflow, store: InMemoryStore, gateway: AsyncMock, owner: CartOwner
    ) -> None:
        async def charge_while_stock_sells_out(*args, **kwargs):
            store.products[1].stock_quantity = 0
            return approved(Decimal("35.00"), "pi_race")

        gateway.charge.side_effect = charge_while_stock_sells_out
        gateway.refund.side_effect = ConnectionError("gateway down")

        with pytest.raises(OrderFinalizationError) as exc_info:
            await workflow.place_order(owner.user_id, TOKEN)

        assert exc_info.value.transaction_id == "pi_race"
        order = next(iter(store.orders.values()))
        assert order.status == OrderStatus.PENDING

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_commit_failure_after_capture_raises_finalization_error(
        self, workflow: OrderPlacementWorkflow, store: InMemoryStore, gateway: AsyncMock, owner: CartOwner
    ) -> None:
        """A failed finalization commit rolls back everything and surfaces loudly."""
        gateway.charge.return_value = approved(Decimal("35.00"), "pi_lost")
        store.fail_commits_touching("decrement_stock")

        with pytest.raises(OrderFinalizationError) as exc_info:
            await workflow.place_order(owner.user_id, TOKEN)

        error = exc_info.value
        assert error.transaction_id == "pi_lost"
        assert error.payment_reference == store.orders[error.order_id].payment_reference
        assert isinstance(error.cause, RuntimeError)
        assert store.orders[error.order_id].status == OrderStatus.PENDING
        assert store.stock_of(1) == 5
        assert len(store.cart_lines(owner)) == 2
        assert store.events_of_type("order.placed") == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_finalization_survives_caller_cancellation(
        self, workflow: OrderPlacementWorkflow, store: InMemoryStore, gateway: AsyncMock, owner: CartOwner
    ) -> None:
        """Cancelling the caller after capture still commits the order, then re-raises."""
        gateway.charge.return_value = approved(Decimal("35.00"), "pi_cancel")
        gate = store.hold_finalization()

        placement = asyncio.create_task(workflow.place_order(owner.user_id, TOKEN))
        await asyncio.wait_for(store.finalization_waiting.wait(), timeout=1)
        placement.cancel()
        await asyncio.sleep(0)
        gate.set()

        with pytest.raises(asyncio.CancelledError):
            await placement

        order = next(iter(store.orders.values()))
        assert order.status == OrderStatus.PROCESSING
        assert order.transaction_id == "pi_cancel"
        assert store.stock_of(1) == 3
        assert store.cart_lines(owner) == []


class TestRunToCompletion:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_returns_result_when_not_cancelled(self) -> None:
        async def work() -> str:
            await asyncio.sleep(0)
            return "done"

        assert await run_to_completion(work()) == "done"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancellation_waits_for_work_to_finish(self) -> None:
        finished = []
        release = asyncio.Event()
        started = asyncio.Event()

        async def work() -> None:
            started.set()
            await release.wait()
            finished.append(True)

        caller = asyncio.create_task(run_to_completion(work()))
        await started.wait()
        caller.cancel()
        await asyncio.sleep(0)
        assert not caller.done()

        release.set()
        with pytest.raises(asyncio.CancelledError):
            await caller
        assert finished == [True]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_errors_from_work_propagate(self) -> None:
        async def work() -> None:
            raise ValueError("broken")

        with pytest.raises(ValueError, match="broken"):
            await run_to_completion(work())
