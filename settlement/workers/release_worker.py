"""
Release background worker.

Sweeps orders whose hold period has ended and releases their funds. Runs
daily at a scheduled hour (2 AM by default) or on a fixed interval.
"""
import asyncio
import signal
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement.config import get_settings
from settlement.core.exceptions import SettlementConflictError
from settlement.core.settlement import SettlementService
from settlement.database.connection import get_session_factory
from settlement.database.models import Order, utcnow
from settlement.integrations.stripe_client import StripeClient
from settlement.monitoring.logging import setup_logging
from settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ReleaseScheduler:
    """
    Stateless sweep over orders due for release.

    Each order is released in its own session, so one failing order never
    affects the others. Overlapping sweeps are safe: release() rejects an
    order that was released meanwhile.

    Args:
        session_factory: Factory for database sessions
        settlement: State machine performing the release
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settlement: SettlementService,
    ):
        self.session_factory = session_factory
        self.settlement = settlement

    async def due_order_ids(self, now: datetime) -> List[uuid.UUID]:
        """Ids of paid, held, unreleased orders whose release time has come."""
        stmt = (
            select(Order.id)
            .where(
                Order.payment_status == "succeeded",
                Order.held.is_(True),
                Order.released.is_(False),
                Order.release_at <= now,
            )
            .order_by(Order.release_at)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def run_once(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Release every order that is due.

        Args:
            now: Reference time (default: now)

        Returns:
            Dict[str, int]: orders_released, orders_failed, total_orders
        """
        now = now or utcnow()
        started = time.monotonic()
        order_ids = await self.due_order_ids(now)

        logger.info("release_sweep_started", due_orders=len(order_ids), now=now.isoformat())

        released = failed = 0
        for order_id in order_ids:
            try:
                async with self.session_factory() as db:
                    await self.settlement.release(order_id, db, now=now, trigger="scheduler")
                released += 1
            except SettlementConflictError as e:
                # Released or changed by a concurrent sweep or admin
                logger.info("release_sweep_order_skipped", order_id=str(order_id), reason=str(e))
                failed += 1
            except Exception:
                logger.exception("release_sweep_order_failed", order_id=str(order_id))
                failed += 1

        metrics.record_release_sweep(time.monotonic() - started)
        result = {
            "orders_released": released,
            "orders_failed": failed,
            "total_orders": len(order_ids),
        }
        logger.info("release_sweep_completed", **result)
        return result


def calculate_next_run_time(target_hour: int = 2, now: Optional[datetime] = None) -> float:
    """
    Calculate seconds until the next daily run.

    Args:
        target_hour: Hour of day to run (24-hour format, UTC)
        now: Reference time (default: now)

    Returns:
        float: Seconds until next run
    """
    now = now or datetime.now(timezone.utc)
    next_run = now.replace(hour=target_hour, minute=0, second=0, microsecond=0)

    # If we've passed today's run time, schedule for tomorrow
    if now >= next_run:
        next_run += timedelta(days=1)

    seconds_until = (next_run - now).total_seconds()
    logger.info(
        "release_next_run_scheduled",
        next_run=next_run.isoformat(),
        seconds_until=seconds_until,
    )
    return seconds_until


async def start_release_worker(
    target_hour: Optional[int] = None,
    interval_seconds: Optional[int] = None,
    scheduler_factory: Optional[Callable[[], ReleaseScheduler]] = None,
) -> None:
    """
    Start the release worker.

    Args:
        target_hour: Hour of day to run (default: release_run_hour)
        interval_seconds: Fixed cadence instead of a daily run
            (default: release_interval_seconds)
        scheduler_factory: Builds the scheduler (default: Stripe-backed)
    """
    settings = get_settings()
    setup_logging("release-worker")

    target_hour = settings.release_run_hour if target_hour is None else target_hour
    interval_seconds = interval_seconds or settings.release_interval_seconds

    if scheduler_factory is None:
        scheduler = ReleaseScheduler(get_session_factory(), SettlementService(StripeClient()))
    else:
        scheduler = scheduler_factory()
    logger.info(
        "release_worker_starting",
        target_hour=target_hour,
        interval_seconds=interval_seconds,
    )

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("release_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            if interval_seconds:
                seconds_until = float(interval_seconds)
            else:
                seconds_until = calculate_next_run_time(target_hour)

            # Wake up periodically to notice shutdown signals
            while seconds_until > 0 and running:
                sleep_time = min(seconds_until, 60)
                await asyncio.sleep(sleep_time)
                seconds_until -= sleep_time

            if not running:
                break

            try:
                await scheduler.run_once()
            except Exception as e:
                logger.error("release_sweep_execution_error", error=str(e))
    finally:
        logger.info("release_worker_stopped")


def main() -> None:
    """Console entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Held funds release worker")
    parser.add_argument("--hour", type=int, default=None, help="Hour of day to run (0-23, UTC)")
    parser.add_argument(
        "--interval", type=int, default=None, help="Run every N seconds instead of daily"
    )
    args = parser.parse_args()

    asyncio.run(start_release_worker(target_hour=args.hour, interval_seconds=args.interval))


if __name__ == "__main__":
    main()
