"""
Order placement workflow.

``place_order`` runs while holding the cart's placement lock:

1. Read the cart and validate every line against live stock
2. Persist a Pending order shell carrying a fresh payment reference
3. Charge with retries; the reference is the gateway idempotency key
4. Decline: record PaymentFailed and raise PaymentFailedError.
   3-D Secure challenge: record AwaitingAuthentication and return it
5. Capture: in one transaction decrement stock, clear the cart, move the
   order to Processing and stage an ``order.placed`` outbox event
6. Audit the outcome

Once a charge is captured, step 5 runs to completion even if the caller is
cancelled. If stock was taken by someone else in the meantime, the charge is
refunded and the order cancelled.
"""
import asyncio
import time
from dataclasses import replace
from typing import Any, Awaitable, Dict, Optional, TypeVar

import structlog

from marketplace_orders.core.audit import LoggingAuditSink
from marketplace_orders.core.locking import LocalPlacementLocks, PlacementLocks
from marketplace_orders.core.payment_processor import (
    PaymentProcessor,
    PaymentValidationError,
    requires_authentication,
)
from marketplace_orders.core.ports import AuditSink, StockLedger, UnitOfWorkFactory
from marketplace_orders.domain.errors import (
    EmptyCartError,
    InsufficientStockError,
    InvalidTransitionError,
    OrderError,
    OrderFinalizationError,
    OrderNotFoundError,
    PaymentFailedError,
    PlacementInProgressError,
    ProductNotFoundError,
)
from marketplace_orders.domain.models import (
    Cart,
    CartOwner,
    CreateOrderResponse,
    Order,
    PaymentResult,
)
from marketplace_orders.domain.status import OrderStateMachine, OrderStatus
from marketplace_orders.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")

OUTCOME_EVENTS = {
    OrderStatus.PROCESSING: "order.placed",
    OrderStatus.PAYMENT_FAILED: "order.payment_failed",
    OrderStatus.AWAITING_AUTHENTICATION: "order.awaiting_authentication",
    OrderStatus.CANCELLED: "order.cancelled",
}

_FAILURE_OUTCOMES = {
    EmptyCartError: "empty_cart",
    ProductNotFoundError: "product_not_found",
    InsufficientStockError: "insufficient_stock",
    PaymentFailedError: "payment_failed",
    OrderFinalizationError: "finalization_failed",
    PlacementInProgressError: "lock_timeout",
    PaymentValidationError: "invalid_payment",
}


def _outcome_label(error: Exception) -> str:
    return _FAILURE_OUTCOMES.get(type(error), "rejected")


async def run_to_completion(awaitable: Awaitable[T]) -> T:
    """
    Await ``awaitable`` in its own task, shielded from cancellation.

    If the caller is cancelled meanwhile, the cancellation is re-raised only
    after the task has finished.
    """
    task = asyncio.ensure_future(awaitable)
    interrupted = False
    while True:
        try:
            result = await asyncio.shield(task)
            break
        except asyncio.CancelledError:
            if task.done():
                raise
            interrupted = True
    if interrupted:
        raise asyncio.CancelledError()
    return result


def order_event_payload(order: Order, payment_result: Optional[PaymentResult] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "order_id": order.order_id,
        "user_id": order.user_id,
        "session_id": order.session_id,
        "status": order.status.value,
        "total_amount": str(order.total_amount),
        "payment_reference": order.payment_reference,
        "transaction_id": order.transaction_id,
        "items": [
            {"product_id": item.product_id, "quantity": item.quantity, "price": str(item.price)}
            for item in order.items
        ],
    }
    if payment_result is not None:
        payload["payment_message"] = payment_result.message
    return payload


class OrderPlacementWorkflow:
    """Turns a cart into a paid order, or into a recorded failure."""

    def __init__(
        self,
        unit_of_work: UnitOfWorkFactory,
        payment_processor: PaymentProcessor,
        audit_sink: Optional[AuditSink] = None,
        locks: Optional[PlacementLocks] = None,
        state_machine: Optional[OrderStateMachine] = None,
    ):
        self.unit_of_work = unit_of_work
        self.payment_processor = payment_processor
        self.audit_sink = audit_sink or LoggingAuditSink()
        self.locks = locks or LocalPlacementLocks()
        self.state_machine = state_machine or OrderStateMachine()

    async def place_order(
        self, user_id: int, payment_token: str, max_attempts: Optional[int] = None
    ) -> CreateOrderResponse:
        """
        Place an order from a signed-in user's cart.

        Raises:
            EmptyCartError: Cart missing or empty
            ProductNotFoundError: Cart references a missing product
            InsufficientStockError: Stock cannot cover a line
            PaymentValidationError: Blank token or non-positive total
            PaymentFailedError: Declined or retries exhausted
            OrderFinalizationError: Charge captured but no durable order
        """
        return await self.place_order_for(CartOwner.for_user(user_id), payment_token, max_attempts)

    async def place_order_for(
        self, owner: CartOwner, payment_token: str, max_attempts: Optional[int] = None
    ) -> CreateOrderResponse:
        """Place an order from any cart owner, signed-in or anonymous."""
        started = time.perf_counter()
        log = logger.bind(cart=owner.key)
        log.info("order_placement_started")

        try:
            async with self.locks.hold(owner.key):
                response = await self._place(owner, payment_token, max_attempts, log)
        except (OrderError, PaymentValidationError) as e:
            metrics.record_placement(_outcome_label(e), time.perf_counter() - started)
            raise

        outcome = "awaiting_authentication" if response.requires_authentication else "placed"
        metrics.record_placement(outcome, time.perf_counter() - started)
        return response

    async def _place(
        self,
        owner: CartOwner,
        payment_token: str,
        max_attempts: Optional[int],
        log: Any,
    ) -> CreateOrderResponse:
        try:
            async with self.unit_of_work() as uow:
                cart = await uow.carts.get_cart(owner)
                if cart is None or cart.is_empty:
                    raise EmptyCartError()
                await self._check_stock(uow.stock, cart)

                order = Order.from_cart(cart)
                self.payment_processor.validate_charge_request(payment_token, order.total_amount)
                await uow.orders.add(order)
                await uow.commit()
        except (OrderError, PaymentValidationError) as e:
            log.info("order_placement_rejected", reason=str(e))
            await self._audit(
                "PLACE_ORDER",
                "rejected",
                {"user_id": owner.user_id, "session_id": owner.session_id, "reason": str(e)},
            )
            raise

        log = log.bind(order_id=order.order_id, payment_reference=order.payment_reference)
        log.info("order_shell_created", total=str(order.total_amount), items=len(order.items))
        metrics.record_order_total(float(order.total_amount))

        payment_result = await self.payment_processor.charge_with_retry(
            payment_token,
            order.total_amount,
            max_attempts=max_attempts,
            give_up_on=requires_authentication,
            reference=order.payment_reference,
        )

        if payment_result.requires_3d_secure:
            order = await self.record_payment_outcome(
                order, OrderStatus.AWAITING_AUTHENTICATION, payment_result
            )
            log.info("order_awaiting_authentication", redirect_url=payment_result.redirect_url)
            await self._audit_order("awaiting_authentication", order, payment_result)
            return CreateOrderResponse(order=order, payment_result=payment_result)

        if not payment_result.is_success:
            order = await self.record_payment_outcome(
                order, OrderStatus.PAYMENT_FAILED, payment_result
            )
            log.warning("order_payment_failed", message=payment_result.message)
            await self._audit_order("payment_failed", order, payment_result)
            raise PaymentFailedError(payment_result.message, order=order)

        return await run_to_completion(
            self.finalize_paid_order(order, payment_result, clear_cart=True)
        )

    async def complete_authentication(self, order_id: int) -> CreateOrderResponse:
        """
        Resume an order after the cardholder returns from a 3-D Secure challenge.

        Raises:
            OrderNotFoundError: Unknown order
            InvalidTransitionError: Order is not awaiting authentication
            PaymentFailedError: Authentication failed or was declined
        """
        async with self.unit_of_work() as uow:
            order = await uow.orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)

        async with self.locks.hold(order.owner.key):
            async with self.unit_of_work() as uow:
                order = await uow.orders.get(order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            if order.status != OrderStatus.AWAITING_AUTHENTICATION:
                raise InvalidTransitionError(order.status.value, OrderStatus.PROCESSING.value)

            payment_result = await self.lookup_payment(order)
            if payment_result is None:
                payment_result = PaymentResult(
                    is_success=False,
                    amount=order.total_amount,
                    message="Payment could not be found",
                )
            if payment_result.requires_3d_secure:
                return CreateOrderResponse(order=order, payment_result=payment_result)

            if not payment_result.is_success:
                order = await self.record_payment_outcome(
                    order, OrderStatus.PAYMENT_FAILED, payment_result
                )
                await self._audit_order("payment_failed", order, payment_result)
                raise PaymentFailedError(payment_result.message, order=order)

            return await run_to_completion(
                self.finalize_paid_order(order, payment_result, clear_cart=True)
            )

    async def lookup_payment(self, order: Order) -> Optional[PaymentResult]:
        """Current gateway view of the order's charge, if one exists."""
        if order.transaction_id:
            return await self.payment_processor.retrieve(order.transaction_id)
        return await self.payment_processor.find_by_reference(order.payment_reference)

    async def record_payment_outcome(
        self, order: Order, status: OrderStatus, payment_result: PaymentResult
    ) -> Order:
        """Persist a payment-driven status change with its outbox event."""
        updated = replace(
            order, transaction_id=payment_result.transaction_id or order.transaction_id
        )
        self.state_machine.apply_payment_outcome(updated, status)
        async with self.unit_of_work() as uow:
            await uow.orders.save(updated)
            await uow.orders.record_event(
                updated, OUTCOME_EVENTS[status], order_event_payload(updated, payment_result)
            )
            await uow.commit()
        metrics.record_status_transition(order.status.value, status.value)
        return updated

    async def finalize_paid_order(
        self, order: Order, payment_result: PaymentResult, clear_cart: bool = True
    ) -> CreateOrderResponse:
        """
        Commit stock, cart and status changes for a captured charge.

        Raises:
            InsufficientStockError: Stock ran out after capture; refunded and cancelled
            OrderFinalizationError: Nothing durable could be written
        """
        log = logger.bind(
            order_id=order.order_id,
            transaction_id=payment_result.transaction_id,
            payment_reference=order.payment_reference,
        )
        finalized = replace(order, transaction_id=payment_result.transaction_id)
        try:
            async with self.unit_of_work() as uow:
                shortfall = await self._take_stock(uow.stock, order)
                if shortfall is None:
                    if clear_cart:
                        await uow.carts.clear_cart(order.owner)
                    self.state_machine.apply_payment_outcome(finalized, OrderStatus.PROCESSING)
                    await uow.orders.save(finalized)
                    await uow.orders.record_event(
                        finalized, "order.placed", order_event_payload(finalized, payment_result)
                    )
                    await uow.commit()
                else:
                    await uow.rollback()
        except Exception as e:
            metrics.record_finalization_failure()
            log.critical("order_finalization_failed", error=str(e), exc_info=True)
            await self._audit_order("finalization_failed", order, payment_result)
            raise OrderFinalizationError(
                order.order_id, payment_result.transaction_id, order.payment_reference, cause=e
            ) from e

        if shortfall is not None:
            await self._compensate(order, payment_result, shortfall, log)
            raise shortfall

        metrics.record_status_transition(order.status.value, OrderStatus.PROCESSING.value)
        log.info("order_placed", total=str(finalized.total_amount))
        await self._audit_order("success", finalized, payment_result)
        return CreateOrderResponse(order=finalized, payment_result=payment_result)

    async def _compensate(
        self,
        order: Order,
        payment_result: PaymentResult,
        shortfall: InsufficientStockError,
        log: Any,
    ) -> None:
        log.warning("stock_conflict_after_capture", product_id=shortfall.product_id)
        try:
            await self.payment_processor.refund(payment_result.transaction_id, order.total_amount)
        except Exception as e:
            metrics.record_compensating_refund("failed")
            metrics.record_finalization_failure()
            log.critical("compensating_refund_failed", error=str(e))
            await self._audit_order("refund_failed", order, payment_result)
            raise OrderFinalizationError(
                order.order_id, payment_result.transaction_id, order.payment_reference, cause=e
            ) from e

        metrics.record_compensating_refund("issued")
        try:
            cancelled = await self.record_payment_outcome(
                order, OrderStatus.CANCELLED, payment_result
            )
        except Exception as e:
            metrics.record_finalization_failure()
            log.critical("refunded_order_cancel_failed", error=str(e), exc_info=True)
            raise OrderFinalizationError(
                order.order_id, payment_result.transaction_id, order.payment_reference, cause=e
            ) from e
        await self._audit_order("refunded", cancelled, payment_result)

    @staticmethod
    async def _check_stock(stock: StockLedger, cart: Cart) -> None:
        for line in cart.lines:
            product = await stock.get_product(line.product_id)
            if product is None:
                raise ProductNotFoundError(line.product_id)
            if product.stock_quantity < line.quantity:
                raise InsufficientStockError(product.name, product.id)

    @staticmethod
    async def _take_stock(stock: StockLedger, order: Order) -> Optional[InsufficientStockError]:
        for item in order.items:
            if not await stock.decrement_stock(item.product_id, item.quantity):
                product = await stock.get_product(item.product_id)
                name = product.name if product is not None else str(item.product_id)
                return InsufficientStockError(name, item.product_id)
        return None

    async def _audit_order(
        self, outcome: str, order: Order, payment_result: Optional[PaymentResult] = None
    ) -> None:
        metadata = {
            "order_id": order.order_id,
            "user_id": order.user_id,
            "session_id": order.session_id,
            "status": order.status.value,
            "total_amount": str(order.total_amount),
            "payment_reference": order.payment_reference,
            "transaction_id": payment_result.transaction_id if payment_result else order.transaction_id,
        }
        if payment_result is not None and not payment_result.is_success:
            metadata["payment_message"] = payment_result.message
        await self._audit("PLACE_ORDER", outcome, metadata)

    async def _audit(self, event: str, outcome: str, metadata: Dict[str, Any]) -> None:
        try:
            await self.audit_sink.record(event, outcome, metadata)
        except Exception as e:
            metrics.record_audit_failure()
            logger.warning("audit_record_failed", audit_event=event, outcome=outcome, error=str(e))
