"""
Payout reconciliation background worker.

Periodically resolves payouts stuck in processing after a crash.
"""
import asyncio
import signal
from typing import Any, Optional

import structlog

from settlement.config import get_settings
from settlement.core.reconciliation import PayoutReconciler
from settlement.database.connection import get_session_factory
from settlement.integrations.stripe_client import StripeClient
from settlement.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_payout_reconciliation(reconciler: PayoutReconciler) -> None:
    """Run one reconciliation pass in a fresh session."""
    session_factory = get_session_factory()
    async with session_factory() as db:
        result = await reconciler.reconcile_stuck(db)

    if result["failed"] or result["errors"]:
        logger.warning("payout_reconciliation_needs_attention", **result)


async def start_reconciliation_worker(interval_seconds: Optional[int] = None) -> None:
    """
    Start the reconciliation worker.

    Args:
        interval_seconds: Seconds between passes (default: reconciliation_stale_minutes)
    """
    settings = get_settings()
    setup_logging("reconciliation-worker")

    interval = interval_seconds or settings.reconciliation_stale_minutes * 60
    reconciler = PayoutReconciler(StripeClient())

    logger.info("reconciliation_worker_starting", interval_seconds=interval)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await run_payout_reconciliation(reconciler)
            except Exception as e:
                # Continue running even if one pass fails
                logger.error("reconciliation_execution_error", error=str(e))

            remaining = float(interval)
            while remaining > 0 and running:
                sleep_time = min(remaining, 60)
                await asyncio.sleep(sleep_time)
                remaining -= sleep_time
    finally:
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    """Console entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Payout reconciliation worker")
    parser.add_argument("--interval", type=int, default=None, help="Seconds between passes")
    args = parser.parse_args()

    asyncio.run(start_reconciliation_worker(interval_seconds=args.interval))


if __name__ == "__main__":
    main()
