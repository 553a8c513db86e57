"""
Transactional outbox relay for order events.

Order changes stage ``outbox_events`` rows in the same transaction as the
change itself. The relay forwards them to an event sink afterwards:

- oldest first, per batch
- a batch stops at the first event the sink rejects, so a later event for an
  order is never delivered ahead of an earlier one
- delivery is at-least-once; consumers dedupe on ``event_id``
"""
import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_orders.config import get_settings
from marketplace_orders.database.connection import get_session_factory
from marketplace_orders.database.models import OutboxEvent
from marketplace_orders.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EventSink = Callable[[Dict[str, Any]], Awaitable[None]]


def to_message(event: OutboxEvent) -> Dict[str, Any]:
    """Wire form of an outbox row."""
    return {
        "event_id": event.id,
        "event_type": event.event_type,
        "aggregate_type": event.aggregate_type,
        "aggregate_id": event.aggregate_id,
        "payload": event.payload,
        "created_at": event.created_at.isoformat() if event.created_at else None,
    }


async def log_sink(message: Dict[str, Any]) -> None:
    logger.info(
        "order_event_logged",
        event_id=message["event_id"],
        event_type=message["event_type"],
        order_id=message["aggregate_id"],
    )


class RedisStreamSink:
    """
    Appends order events to a Redis stream.

    Each entry carries the event id and type as plain fields and the full
    message as JSON in ``body``; the stream is trimmed to roughly ``maxlen``.
    """

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        stream: Optional[str] = None,
        maxlen: Optional[int] = None,
    ):
        settings = get_settings()
        self.redis_url = settings.redis_url
        self.stream = stream or settings.order_events_stream
        self.maxlen = maxlen or settings.order_events_stream_maxlen
        self._redis = redis_client

    async def __call__(self, message: Dict[str, Any]) -> None:
        if self._redis is None:
            self._redis = aioredis.from_url(self.redis_url, decode_responses=True)
        entry_id = await self._redis.xadd(
            self.stream,
            {
                "event_id": str(message["event_id"]),
                "event_type": message["event_type"],
                "order_id": str(message["aggregate_id"]),
                "body": json.dumps(message, default=str),
            },
            maxlen=self.maxlen,
            approximate=True,
        )
        logger.debug("order_event_streamed", stream=self.stream, entry_id=entry_id)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


class OutboxPublisher:
    """Relays staged order events to ``sink`` until stopped."""

    def __init__(
        self,
        sink: Optional[EventSink] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        batch_size: Optional[int] = None,
        poll_interval_seconds: Optional[float] = None,
    ):
        settings = get_settings()
        self.sink = sink or log_sink
        self.batch_size = batch_size or settings.outbox_batch_size
        self.poll_interval_seconds = (
            poll_interval_seconds
            if poll_interval_seconds is not None
            else settings.outbox_poll_interval_seconds
        )
        self._session_factory = session_factory
        self._stopped = asyncio.Event()

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def _pending_batch(self, db: AsyncSession) -> List[OutboxEvent]:
        result = await db.execute(
            select(OutboxEvent)
            .where(OutboxEvent.published.is_(False))
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(self.batch_size)
        )
        return list(result.scalars().all())

    async def _deliver(self, events: List[OutboxEvent]) -> List[int]:
        delivered: List[int] = []
        for event in events:
            try:
                await self.sink(to_message(event))
            except Exception as e:
                logger.error(
                    "order_event_delivery_failed",
                    event_id=event.id,
                    event_type=event.event_type,
                    order_id=event.aggregate_id,
                    error=str(e),
                )
                break
            metrics.record_outbox_event_published(event.event_type)
            delivered.append(event.id)
        return delivered

    async def process_batch(self) -> int:
        """
        Deliver one batch and flag the delivered rows.

        Returns:
            int: Number of events delivered
        """
        async with self._sessions()() as db:
            events = await self._pending_batch(db)
            if not events:
                return 0

            delivered = await self._deliver(events)
            if delivered:
                await db.execute(
                    update(OutboxEvent)
                    .where(OutboxEvent.id.in_(delivered))
                    .values(published=True, published_at=datetime.now(timezone.utc))
                )
                await db.commit()

        logger.info(
            "outbox_batch_relayed",
            fetched=len(events),
            delivered=len(delivered),
            held_back=len(events) - len(delivered),
        )
        return len(delivered)

    async def get_pending_count(self) -> int:
        """Undelivered events; also published as the outbox depth gauge."""
        async with self._sessions()() as db:
            count = (
                await db.execute(
                    select(func.count(OutboxEvent.id)).where(OutboxEvent.published.is_(False))
                )
            ).scalar_one()
        metrics.set_outbox_queue_depth(count)
        return count

    async def start(self) -> None:
        """Relay until ``stop`` is called; a full batch is followed immediately by the next."""
        self._stopped.clear()
        logger.info(
            "outbox_relay_started",
            batch_size=self.batch_size,
            poll_interval=self.poll_interval_seconds,
        )
        while not self._stopped.is_set():
            try:
                delivered = await self.process_batch()
                await self.get_pending_count()
            except Exception as e:
                logger.error("outbox_relay_error", error=str(e))
                delivered = 0
            if delivered < self.batch_size:
                try:
                    await asyncio.wait_for(self._stopped.wait(), timeout=self.poll_interval_seconds)
                except asyncio.TimeoutError:
                    pass
        logger.info("outbox_relay_stopped")

    def stop(self) -> None:
        self._stopped.set()
