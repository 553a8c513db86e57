"""
Outbox relay worker.

Forwards staged order events to the configured sink (Redis stream or log)
until SIGINT/SIGTERM.
"""
import asyncio
import signal
from typing import Optional

import structlog

from marketplace_orders.config import Settings, get_settings
from marketplace_orders.core.outbox import EventSink, OutboxPublisher, RedisStreamSink, log_sink
from marketplace_orders.database.connection import close_db
from marketplace_orders.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


def build_event_sink(settings: Optional[Settings] = None) -> EventSink:
    settings = settings or get_settings()
    if settings.outbox_sink == "redis":
        return RedisStreamSink()
    return log_sink


async def start_outbox_publisher() -> None:
    setup_logging()
    settings = get_settings()
    sink = build_event_sink(settings)
    publisher = OutboxPublisher(sink)
    logger.info("outbox_worker_starting", sink=settings.outbox_sink)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, publisher.stop)

    try:
        await publisher.start()
    finally:
        if isinstance(sink, RedisStreamSink):
            await sink.close()
        await close_db()
        logger.info("outbox_worker_stopped")


def main() -> None:
    asyncio.run(start_outbox_publisher())


if __name__ == "__main__":
    main()
