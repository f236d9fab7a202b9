"""
Payout ledger.

One payout per (order, seller) holding the seller's share of the order and
the state of the transfer to the seller's connected account.
"""
import math
import uuid
from collections import defaultdict
from typing import Any, Dict, List

import structlog
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.core.exceptions import PayoutNotFound
from settlement.core.fees import FeeRates, compute_payout_split
from settlement.database.models import Order, Payout

logger = structlog.get_logger(__name__)

PAYOUT_STATUSES = ("pending", "processing", "completed", "failed")


def is_blocked(payout: Payout, order: Order) -> bool:
    """A payout left pending on an order that was already released."""
    return payout.status == "pending" and order.released


def seller_gross_amounts(order: Order) -> Dict[str, int]:
    """Sum of line totals per seller, in line order."""
    gross: Dict[str, int] = {}
    for line in order.lines:
        gross[line.seller_id] = gross.get(line.seller_id, 0) + line.line_total_cents
    return gross


def paginate(page: int, page_size: int, total: int) -> Dict[str, Any]:
    total_pages = math.ceil(total / page_size) if page_size else 0
    return {
        "page": page,
        "page_size": page_size,
        "total": total,
        "total_pages": total_pages,
        "has_next": page < total_pages,
        "has_prev": page > 1,
    }


class PayoutLedger:
    """Creates and queries payout entries."""

    async def create_pending_payouts(self, order: Order, db: AsyncSession) -> List[Payout]:
        """
        Create a pending payout for every seller on the order that has none.

        Must run while the order is locked. The (order, seller) unique
        constraint rejects duplicates that slip past the existence check.

        Args:
            order: Paid order with its lines loaded
            db: Database session (not committed here)

        Returns:
            List[Payout]: Newly created payouts
        """
        rates = FeeRates.from_order(order)

        result = await db.execute(select(Payout.seller_id).where(Payout.order_id == order.id))
        existing = set(result.scalars().all())

        created: List[Payout] = []
        for seller_id, gross_cents in seller_gross_amounts(order).items():
            if seller_id in existing:
                continue

            split = compute_payout_split(gross_cents, rates)
            payout = Payout(
                id=uuid.uuid4(),
                seller_id=seller_id,
                gross_cents=split.gross_cents,
                platform_fee_cents=split.platform_fee_cents,
                processor_fee_cents=split.processor_fee_cents,
                tax_cents=split.tax_cents,
                seller_earnings_cents=split.seller_earnings_cents,
                status="pending",
                transfer_attempts=0,
            )
            order.payouts.append(payout)
            created.append(payout)

        await db.flush()

        if created:
            logger.info(
                "payouts_created",
                order_id=str(order.id),
                seller_ids=[p.seller_id for p in created],
            )
        return created

    async def get(self, payout_id: uuid.UUID, db: AsyncSession) -> Payout:
        """
        Raises:
            PayoutNotFound: If the payout does not exist
        """
        payout = await db.get(Payout, payout_id)
        if payout is None:
            raise PayoutNotFound(f"Payout {payout_id} not found")
        return payout

    async def get_for_seller(
        self, payout_id: uuid.UUID, seller_id: str, db: AsyncSession
    ) -> Payout:
        """Fetch one payout visible to a seller; others look like missing ones."""
        payout = await db.get(Payout, payout_id)
        if payout is None or payout.seller_id != seller_id:
            raise PayoutNotFound(f"Payout {payout_id} not found")
        return payout

    async def summarize_for_seller(self, seller_id: str, db: AsyncSession) -> Dict[str, Any]:
        """
        Earnings summary over every payout of a seller.

        total_earnings counts completed payouts, pending_earnings pending
        ones; total_fees is platform fee plus processor fee plus tax.
        """
        stmt = (
            select(
                Payout.status,
                func.count(Payout.id),
                func.coalesce(func.sum(Payout.gross_cents), 0),
                func.coalesce(func.sum(Payout.seller_earnings_cents), 0),
                func.coalesce(
                    func.sum(
                        Payout.platform_fee_cents + Payout.processor_fee_cents + Payout.tax_cents
                    ),
                    0,
                ),
            )
            .where(Payout.seller_id == seller_id)
            .group_by(Payout.status)
        )
        rows = (await db.execute(stmt)).all()

        counts = {status: 0 for status in PAYOUT_STATUSES}
        earnings = {status: 0 for status in PAYOUT_STATUSES}
        total_sales = 0
        total_fees = 0
        for status, count, gross, seller_earnings, fees in rows:
            counts[status] = count
            earnings[status] = int(seller_earnings)
            total_sales += int(gross)
            total_fees += int(fees)

        monthly: Dict[str, int] = defaultdict(int)
        completed = await db.execute(
            select(Payout.transfer_date, Payout.seller_earnings_cents).where(
                and_(
                    Payout.seller_id == seller_id,
                    Payout.status == "completed",
                    Payout.transfer_date.is_not(None),
                )
            )
        )
        for transfer_date, seller_earnings in completed.all():
            monthly[transfer_date.strftime("%Y-%m")] += seller_earnings

        return {
            "total_earnings_cents": earnings["completed"],
            "pending_earnings_cents": earnings["pending"],
            "total_sales_cents": total_sales,
            "total_fees_cents": total_fees,
            "total_payouts": sum(counts.values()),
            "completed_payouts": counts["completed"],
            "pending_payouts": counts["pending"],
            "processing_payouts": counts["processing"],
            "failed_payouts": counts["failed"],
            "monthly_earnings_cents": dict(sorted(monthly.items())),
        }

    async def list_for_seller(
        self,
        seller_id: str,
        db: AsyncSession,
        page: int = 1,
        page_size: int = 20,
    ) -> Dict[str, Any]:
        """
        Page of a seller's payouts, newest first, with the earnings summary.

        Returns:
            Dict[str, Any]: payouts, summary and pagination
        """
        total = (
            await db.execute(
                select(func.count(Payout.id)).where(Payout.seller_id == seller_id)
            )
        ).scalar_one()

        stmt = (
            select(Payout)
            .where(Payout.seller_id == seller_id)
            .order_by(Payout.created_at.desc(), Payout.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        payouts = list((await db.execute(stmt)).scalars().all())

        return {
            "payouts": payouts,
            "summary": await self.summarize_for_seller(seller_id, db),
            "pagination": paginate(page, page_size, total),
        }

    async def list_blocked(self, db: AsyncSession) -> List[Payout]:
        """Pending payouts whose order was already released."""
        stmt = (
            select(Payout)
            .join(Order, Order.id == Payout.order_id)
            .where(and_(Payout.status == "pending", Order.released.is_(True)))
            .order_by(Payout.created_at)
        )
        return list((await db.execute(stmt)).scalars().all())

    async def list_stuck_processing(
        self, db: AsyncSession, updated_before: Any
    ) -> List[Payout]:
        """Payouts claimed for transfer but not resolved since the cutoff."""
        stmt = (
            select(Payout)
            .where(and_(Payout.status == "processing", Payout.updated_at < updated_before))
            .order_by(Payout.updated_at)
        )
        return list((await db.execute(stmt)).scalars().all())
