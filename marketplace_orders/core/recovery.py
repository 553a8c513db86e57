"""
Recovery sweep for orders left behind by an interrupted placement.

Finds orders stuck in Pending (the process died between persisting the shell
and finalizing) or in AwaitingAuthentication past the challenge timeout, asks
the gateway what happened to their charge, and settles them:

- charge captured, stock available  -> Processing ("finalized")
- charge captured, stock gone        -> refunded and Cancelled ("refunded")
- no captured charge, Pending        -> PaymentFailed ("payment_failed")
- challenge never completed          -> Cancelled ("abandoned")

Each order is settled under its cart's placement lock and only if its status
is still the one it was selected with, so repeated sweeps are harmless.
"""
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

import structlog

from marketplace_orders.config import get_settings
from marketplace_orders.core.order_workflow import OrderPlacementWorkflow, run_to_completion
from marketplace_orders.domain.errors import InsufficientStockError, PlacementInProgressError
from marketplace_orders.domain.models import Order, PaymentResult
from marketplace_orders.domain.status import OrderStatus
from marketplace_orders.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class OrderRecoverySweep:
    """Settles stale Pending and AwaitingAuthentication orders."""

    def __init__(
        self,
        workflow: OrderPlacementWorkflow,
        stale_after: Optional[timedelta] = None,
        authentication_timeout: Optional[timedelta] = None,
        batch_size: int = 100,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        settings = get_settings()
        self.workflow = workflow
        self.stale_after = stale_after or timedelta(seconds=settings.stale_order_after_seconds)
        self.authentication_timeout = authentication_timeout or timedelta(
            seconds=settings.authentication_timeout_seconds
        )
        self.batch_size = batch_size
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def run_once(self) -> Dict[str, int]:
        """
        Run one sweep.

        Returns:
            Dict[str, int]: Count of orders per action taken
        """
        now = self._clock()
        async with self.workflow.unit_of_work() as uow:
            pending = await uow.orders.list_stale(
                OrderStatus.PENDING, now - self.stale_after, self.batch_size
            )
            awaiting = await uow.orders.list_stale(
                OrderStatus.AWAITING_AUTHENTICATION,
                now - self.authentication_timeout,
                self.batch_size,
            )

        summary: Counter = Counter()
        for order in [*pending, *awaiting]:
            try:
                action = await self.resolve(order)
            except PlacementInProgressError:
                action = "skipped"
            except Exception as e:
                action = "error"
                logger.error(
                    "order_recovery_failed",
                    order_id=order.order_id,
                    payment_reference=order.payment_reference,
                    error=str(e),
                )
            summary[action] += 1
            metrics.record_recovery_action(action)

        logger.info("order_recovery_sweep_completed", examined=len(pending) + len(awaiting), **summary)
        return dict(summary)

    async def resolve(self, order: Order) -> str:
        """Settle one stale order; returns the action taken."""
        async with self.workflow.locks.hold(order.owner.key):
            async with self.workflow.unit_of_work() as uow:
                current = await uow.orders.get(order.order_id)
            if current is None or current.status != order.status:
                return "skipped"

            payment = await self.workflow.lookup_payment(current)
            log = logger.bind(order_id=current.order_id, status=current.status.value)

            if payment is not None and payment.is_success:
                try:
                    await run_to_completion(
                        self.workflow.finalize_paid_order(current, payment, clear_cart=False)
                    )
                except InsufficientStockError:
                    log.warning("recovered_order_refunded")
                    return "refunded"
                log.info("recovered_order_finalized", transaction_id=payment.transaction_id)
                return "finalized"

            if payment is None:
                payment = PaymentResult(
                    is_success=False,
                    amount=current.total_amount,
                    message="No captured payment found for order",
                )

            if current.status == OrderStatus.AWAITING_AUTHENTICATION or payment.requires_3d_secure:
                await self.workflow.record_payment_outcome(current, OrderStatus.CANCELLED, payment)
                log.info("abandoned_order_cancelled")
                return "abandoned"

            await self.workflow.record_payment_outcome(current, OrderStatus.PAYMENT_FAILED, payment)
            log.info("unpaid_order_marked_failed")
            return "payment_failed"
