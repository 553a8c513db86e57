"""
Audit sinks.

Recording is best-effort: a failing sink is logged and counted, never raised
into the order flow.
"""
from typing import Any, Mapping, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_orders.database.connection import get_session_factory
from marketplace_orders.database.models import AuditLog
from marketplace_orders.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class LoggingAuditSink:
    """Writes audit records to the structured log only."""

    async def record(self, event: str, outcome: str, metadata: Mapping[str, Any]) -> None:
        logger.info("audit_record", audit_event=event, outcome=outcome, **dict(metadata))


class SqlAuditSink:
    """
    Writes audit records to the audit_logs table.

    Uses its own session so an audit row never rides on, or rolls back with,
    the business transaction.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory

    async def record(self, event: str, outcome: str, metadata: Mapping[str, Any]) -> None:
        data = dict(metadata)
        entity_id = data.get("order_id")
        try:
            factory = self._session_factory or get_session_factory()
            async with factory() as session:
                session.add(
                    AuditLog(
                        action_type=event,
                        outcome=outcome,
                        entity_type="Order",
                        entity_id=str(entity_id) if entity_id is not None else None,
                        user_id=data.get("user_id"),
                        additional_data=data,
                    )
                )
                await session.commit()
        except Exception as e:
            metrics.record_audit_failure()
            logger.warning("audit_write_failed", audit_event=event, error=str(e))
