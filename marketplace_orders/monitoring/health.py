"""
Liveness and readiness probes for the order API.

Readiness needs the database, and Redis whenever placement locks or the order
event stream live there. The full report also shows the order backlog: outbox
events not yet relayed and Pending orders the recovery sweep will pick up.
"""
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_orders.config import get_settings
from marketplace_orders.database.connection import get_session_factory
from marketplace_orders.database.models import Order, OutboxEvent
from marketplace_orders.domain.status import OrderStatus

logger = structlog.get_logger(__name__)

Probe = Callable[[], Awaitable[Optional[Dict[str, Any]]]]


class HealthCheck:
    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None) -> None:
        self.settings = get_settings()
        self._session_factory = session_factory

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    @property
    def uses_redis(self) -> bool:
        return self.settings.placement_lock_backend == "redis" or self.settings.outbox_sink == "redis"

    async def check_database(self) -> None:
        async with self._sessions()() as db:
            await db.execute(text("SELECT 1"))

    async def check_redis(self) -> None:
        client = aioredis.from_url(self.settings.redis_url, decode_responses=True)
        try:
            await client.ping()
        finally:
            await client.aclose()

    async def order_backlog(self) -> Dict[str, Any]:
        stale_before = datetime.now(timezone.utc) - timedelta(
            seconds=self.settings.stale_order_after_seconds
        )
        async with self._sessions()() as db:
            unrelayed = (
                await db.execute(
                    select(func.count(OutboxEvent.id)).where(OutboxEvent.published.is_(False))
                )
            ).scalar_one()
            stale_pending = (
                await db.execute(
                    select(func.count(Order.id)).where(
                        Order.status == OrderStatus.PENDING.value,
                        Order.last_status_change_at < stale_before,
                    )
                )
            ).scalar_one()
        return {"unrelayed_events": unrelayed, "stale_pending_orders": stale_pending}

    @staticmethod
    async def _run(name: str, probe: Probe) -> Dict[str, Any]:
        started = time.perf_counter()
        try:
            details = await probe()
        except Exception as e:
            logger.error("health_probe_failed", probe=name, error=str(e))
            return {"status": "unhealthy", "error": str(e)}
        report: Dict[str, Any] = {
            "status": "healthy",
            "latency_ms": round((time.perf_counter() - started) * 1000, 2),
        }
        if details:
            report.update(details)
        return report

    async def _report(self, probes: Dict[str, Probe]) -> Dict[str, Any]:
        checks = {name: await self._run(name, probe) for name, probe in probes.items()}
        healthy = all(check["status"] == "healthy" for check in checks.values())
        return {"status": "healthy" if healthy else "unhealthy", "checks": checks}

    async def readiness(self) -> Dict[str, Any]:
        probes: Dict[str, Probe] = {"database": self.check_database}
        if self.uses_redis:
            probes["redis"] = self.check_redis
        return await self._report(probes)

    async def check_all(self) -> Dict[str, Any]:
        """Readiness probes plus the order backlog."""
        report = await self.readiness()
        backlog = await self._run("order_backlog", self.order_backlog)
        report["checks"]["order_backlog"] = backlog
        if backlog["status"] != "healthy":
            report["status"] = "unhealthy"
        return report

    async def liveness(self) -> Dict[str, Any]:
        return {"status": "alive", "message": "Order service is running"}
