"""Order queries and administrative status changes."""
from typing import List, Optional

import structlog

from marketplace_orders.core.audit import LoggingAuditSink
from marketplace_orders.core.order_workflow import order_event_payload
from marketplace_orders.core.ports import AuditSink, UnitOfWorkFactory
from marketplace_orders.domain.errors import OrderNotFoundError
from marketplace_orders.domain.models import Order
from marketplace_orders.domain.status import OrderStateMachine, OrderStatus, parse_status
from marketplace_orders.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class OrderService:
    def __init__(
        self,
        unit_of_work: UnitOfWorkFactory,
        audit_sink: Optional[AuditSink] = None,
        state_machine: Optional[OrderStateMachine] = None,
    ):
        self.unit_of_work = unit_of_work
        self.audit_sink = audit_sink or LoggingAuditSink()
        self.state_machine = state_machine or OrderStateMachine()

    async def update_order_status(
        self, order_id: int, status: str, acting_user_id: Optional[int] = None
    ) -> Order:
        """
        Apply an administrative status change.

        Raises:
            InvalidStatusError: Unknown status literal (checked before lookup)
            OrderNotFoundError: Unknown order
            InvalidTransitionError: Change not allowed from the current status
        """
        requested = parse_status(status)

        async with self.unit_of_work() as uow:
            order = await uow.orders.get(order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            previous = order.status
            self.state_machine.transition(order, requested)
            await uow.orders.save(order)
            event_type = (
                "order.cancelled" if requested == OrderStatus.CANCELLED else "order.status_changed"
            )
            await uow.orders.record_event(order, event_type, order_event_payload(order))
            await uow.commit()

        metrics.record_status_transition(previous.value, requested.value)
        logger.info(
            "order_status_updated",
            order_id=order_id,
            from_status=previous.value,
            to_status=requested.value,
            acting_user_id=acting_user_id,
        )
        try:
            await self.audit_sink.record(
                "UPDATE_ORDER_STATUS",
                "success",
                {
                    "order_id": order_id,
                    "user_id": acting_user_id,
                    "from_status": previous.value,
                    "to_status": requested.value,
                },
            )
        except Exception as e:
            metrics.record_audit_failure()
            logger.warning("audit_record_failed", audit_event="UPDATE_ORDER_STATUS", error=str(e))
        return order

    async def get_order_history(self, user_id: int) -> List[Order]:
        """Orders for a user, newest first."""
        async with self.unit_of_work() as uow:
            return await uow.orders.list_for_user(user_id)

    async def get_order_details(self, order_id: int, user_id: Optional[int] = None) -> Order:
        """
        Fetch one order; when ``user_id`` is given, only that user's orders are visible.

        Raises:
            OrderNotFoundError: Unknown order, or owned by someone else
        """
        async with self.unit_of_work() as uow:
            order = await uow.orders.get(order_id)
        if order is None or (user_id is not None and order.user_id != user_id):
            raise OrderNotFoundError(order_id)
        return order

    def get_available_statuses(self) -> List[str]:
        return self.state_machine.available_statuses()
