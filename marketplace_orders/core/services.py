"""Production wiring of the order services."""
from typing import Optional

from marketplace_orders.config import Settings, get_settings
from marketplace_orders.core.audit import LoggingAuditSink, SqlAuditSink
from marketplace_orders.core.locking import build_placement_locks
from marketplace_orders.core.order_service import OrderService
from marketplace_orders.core.order_workflow import OrderPlacementWorkflow
from marketplace_orders.core.payment_processor import PaymentProcessor
from marketplace_orders.core.ports import AuditSink
from marketplace_orders.database.stores import sql_unit_of_work
from marketplace_orders.integrations.stripe_gateway import StripePaymentGateway


def build_audit_sink(settings: Optional[Settings] = None) -> AuditSink:
    settings = settings or get_settings()
    return SqlAuditSink() if settings.audit_enabled else LoggingAuditSink()


def build_order_workflow(settings: Optional[Settings] = None) -> OrderPlacementWorkflow:
    """Workflow over the configured database, Stripe and lock backend."""
    settings = settings or get_settings()
    return OrderPlacementWorkflow(
        unit_of_work=sql_unit_of_work(),
        payment_processor=PaymentProcessor(StripePaymentGateway()),
        audit_sink=build_audit_sink(settings),
        locks=build_placement_locks(settings),
    )


def build_order_service(settings: Optional[Settings] = None) -> OrderService:
    return OrderService(unit_of_work=sql_unit_of_work(), audit_sink=build_audit_sink(settings))
