"""
Payout reconciliation.

A payout is claimed (processing) and committed before its transfer is sent.
If the process dies before the outcome is recorded, the payout stays
processing. This engine settles such payouts against the transfers Stripe
actually holds for the order's transfer group.
"""
import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.config import Settings, get_settings
from settlement.core.locking import OrderLocks, lock_order_row, order_locks
from settlement.core.payouts import PayoutLedger
from settlement.database.models import utcnow
from settlement.integrations.stripe_client import StripeClient, StripeError, TransferRecord
from settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

UNKNOWN_OUTCOME_REASON = "transfer outcome unknown; no processor transfer found"


class PayoutReconciler:
    """
    Resolves payouts stuck in processing.

    A matching processor transfer completes the payout; otherwise it is
    failed so an administrator can retry it. The retry reuses the same
    idempotency key, so a transfer that surfaces late is not duplicated.
    """

    def __init__(
        self,
        stripe_client: StripeClient,
        settings: Optional[Settings] = None,
        locks: Optional[OrderLocks] = None,
        ledger: Optional[PayoutLedger] = None,
    ):
        self.stripe_client = stripe_client
        self.settings = settings or get_settings()
        self.locks = locks or order_locks
        self.ledger = ledger or PayoutLedger()

    async def reconcile_stuck(
        self,
        db: AsyncSession,
        older_than: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Reconcile payouts left processing for longer than older_than.

        Args:
            db: Database session
            older_than: Minimum age (default: reconciliation_stale_minutes)
            now: Reference time (default: now)

        Returns:
            Dict[str, Any]: Counts of checked, completed, failed and errored payouts
        """
        now = now or utcnow()
        if older_than is None:
            older_than = timedelta(minutes=self.settings.reconciliation_stale_minutes)

        stuck = await self.ledger.list_stuck_processing(db, now - older_than)
        await db.commit()

        logger.info("payout_reconciliation_started", stuck_payouts=len(stuck))

        transfers_by_group: Dict[str, List[TransferRecord]] = {}
        completed = failed = errors = 0

        for payout in stuck:
            async with self.locks.hold(payout.order_id):
                order = await lock_order_row(db, payout.order_id)
                await db.refresh(payout)
                if payout.status != "processing":
                    await db.commit()
                    continue

                group = order.order_number
                if group not in transfers_by_group:
                    try:
                        transfers_by_group[group] = await asyncio.wait_for(
                            self.stripe_client.list_transfers(group),
                            timeout=self.settings.transfer_timeout_seconds,
                        )
                    except (StripeError, asyncio.TimeoutError) as e:
                        await db.commit()
                        errors += 1
                        logger.error(
                            "payout_reconciliation_lookup_failed",
                            payout_id=str(payout.id),
                            transfer_group=group,
                            error=str(e) or e.__class__.__name__,
                        )
                        continue

                match = next(
                    (
                        t
                        for t in transfers_by_group[group]
                        if t.metadata.get("payout_id") == str(payout.id)
                    ),
                    None,
                )

                if match is not None:
                    payout.status = "completed"
                    payout.stripe_transfer_id = match.id
                    payout.transfer_date = now
                    payout.failure_reason = None
                    completed += 1
                    logger.info(
                        "payout_reconciled_completed",
                        payout_id=str(payout.id),
                        transfer_id=match.id,
                    )
                else:
                    payout.status = "failed"
                    payout.failure_reason = UNKNOWN_OUTCOME_REASON
                    failed += 1
                    logger.warning("payout_reconciled_failed", payout_id=str(payout.id))

                await db.commit()

        metrics.record_reconciliation(completed, failed)
        result = {
            "checked": len(stuck),
            "completed": completed,
            "failed": failed,
            "errors": errors,
        }
        logger.info("payout_reconciliation_completed", **result)
        return result
