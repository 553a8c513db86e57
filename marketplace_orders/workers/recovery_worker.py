"""
Order recovery background worker.

Runs the recovery sweep on a fixed interval so orders interrupted mid-placement
are finalized, refunded or failed.
"""
import asyncio
import signal
from typing import Optional

import structlog

from marketplace_orders.config import get_settings
from marketplace_orders.core.recovery import OrderRecoverySweep
from marketplace_orders.core.services import build_order_workflow
from marketplace_orders.database.connection import close_db
from marketplace_orders.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_recovery_loop(
    sweep: OrderRecoverySweep,
    interval_seconds: float,
    stop_event: asyncio.Event,
    max_sweeps: Optional[int] = None,
) -> int:
    """
    Sweep every ``interval_seconds`` until ``stop_event`` is set.

    Returns:
        int: Number of sweeps run
    """
    sweeps = 0
    while not stop_event.is_set():
        try:
            await sweep.run_once()
        except Exception as e:
            logger.error("order_recovery_sweep_failed", error=str(e))
        sweeps += 1
        if max_sweeps is not None and sweeps >= max_sweeps:
            break
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass
    return sweeps


async def start_recovery_worker() -> None:
    """Run the recovery sweep loop until SIGINT/SIGTERM."""
    setup_logging()
    settings = get_settings()
    logger.info(
        "order_recovery_worker_starting",
        interval_seconds=settings.recovery_interval_seconds,
        stale_after_seconds=settings.stale_order_after_seconds,
    )

    sweep = OrderRecoverySweep(build_order_workflow(settings))
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await run_recovery_loop(sweep, settings.recovery_interval_seconds, stop_event)
    finally:
        await close_db()
        logger.info("order_recovery_worker_stopped")


def main() -> None:
    asyncio.run(start_recovery_worker())


if __name__ == "__main__":
    main()
