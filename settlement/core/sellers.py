"""Seller payout accounts: onboarding, capability refresh and payout schedule."""
import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Dict, Optional, TypeVar

import structlog
from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.config import Settings, get_settings
from settlement.core.exceptions import PaymentProcessorError, SellerNotFound
from settlement.core.payout_schedule import PayoutSchedule, calculate_next_payout_date
from settlement.core.payouts import PayoutLedger, paginate
from settlement.database.models import Product, SellerAccount, utcnow
from settlement.integrations.stripe_client import StripeClient, StripeError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class OnboardingLink:
    """Hosted onboarding link for a seller's connected account."""

    seller: SellerAccount
    url: str


class SellerAccountService:
    """
    Keeps seller payout destinations in sync with the processor.

    Args:
        stripe_client: Payment processor adapter
        settings: Optional settings (defaults to cached settings)
        ledger: Payout ledger used for seller earnings summaries
    """

    def __init__(
        self,
        stripe_client: StripeClient,
        settings: Optional[Settings] = None,
        ledger: Optional[PayoutLedger] = None,
    ):
        self.stripe_client = stripe_client
        self.settings = settings or get_settings()
        self.ledger = ledger or PayoutLedger()

    async def _processor_call(self, seller_id: str, operation: str, call: Awaitable[T]) -> T:
        """Await one processor call bounded by the transfer timeout."""
        timeout = self.settings.transfer_timeout_seconds
        try:
            return await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError as e:
            logger.error("seller_processor_timeout", seller_id=seller_id, operation=operation)
            raise PaymentProcessorError(
                f"Could not {operation} for seller {seller_id}: timed out after {timeout:g}s"
            ) from e
        except StripeError as e:
            raise PaymentProcessorError(f"Could not {operation} for seller {seller_id}: {e}") from e

    async def get(self, seller_id: str, db: AsyncSession) -> SellerAccount:
        seller = await db.get(SellerAccount, seller_id)
        if seller is None:
            raise SellerNotFound(f"Seller {seller_id} not found")
        return seller

    async def _get_or_create(self, seller_id: str, db: AsyncSession) -> SellerAccount:
        """
        Seller account row, created for sellers known only to the catalog.

        Raises:
            SellerNotFound: If the seller has neither an account nor products
        """
        seller = await db.get(SellerAccount, seller_id)
        if seller is not None:
            return seller

        listed = await db.execute(select(Product.id).where(Product.seller_id == seller_id).limit(1))
        if listed.first() is None:
            raise SellerNotFound(f"Seller {seller_id} not found")

        seller = SellerAccount(
            seller_id=seller_id,
            charges_enabled=False,
            payouts_enabled=False,
            details_submitted=False,
        )
        db.add(seller)
        try:
            await db.commit()
        except IntegrityError:
            # Concurrent onboarding inserted the row first
            await db.rollback()
            return await self.get(seller_id, db)
        logger.info("seller_account_created", seller_id=seller_id)
        return seller

    async def start_onboarding(
        self, seller_id: str, db: AsyncSession, email: Optional[str] = None
    ) -> OnboardingLink:
        """
        Create the seller's connected account if missing and an onboarding link.

        The account id is stored before the link is requested, so a failed
        link request can be repeated without creating a second account.

        Raises:
            SellerNotFound: If the seller is unknown
            PaymentProcessorError: If a processor call fails or times out
        """
        seller = await self._get_or_create(seller_id, db)

        if not seller.stripe_account_id:
            account_id = await self._processor_call(
                seller_id,
                "create connected account",
                self.stripe_client.create_connected_account(
                    seller_id, country=self.settings.connect_country, email=email
                ),
            )
            seller.stripe_account_id = account_id
            await db.commit()
            logger.info("seller_connected_account_stored", seller_id=seller_id, account_id=account_id)

        account_id = seller.stripe_account_id
        base = self.settings.client_url.rstrip("/")
        url = await self._processor_call(
            seller_id,
            "create onboarding link",
            self.stripe_client.create_account_link(
                account_id,
                refresh_url=f"{base}/connect/refresh?account_id={account_id}",
                return_url=f"{base}/connect/success?account_id={account_id}",
            ),
        )
        logger.info("seller_onboarding_link_created", seller_id=seller_id, account_id=account_id)
        return OnboardingLink(seller=seller, url=url)

    async def refresh_seller_account(self, seller_id: str, db: AsyncSession) -> SellerAccount:
        """
        Pull capability flags of the seller's connected account.

        Sellers without a connected account are returned unchanged.

        Raises:
            SellerNotFound: If the seller is unknown
            PaymentProcessorError: If the processor lookup fails or times out
        """
        seller = await self.get(seller_id, db)
        if not seller.stripe_account_id:
            logger.info("seller_has_no_connected_account", seller_id=seller_id)
            return seller

        status = await self._processor_call(
            seller_id,
            "retrieve connected account",
            self.stripe_client.retrieve_account_status(seller.stripe_account_id),
        )

        seller.charges_enabled = status.charges_enabled
        seller.payouts_enabled = status.payouts_enabled
        seller.details_submitted = status.details_submitted
        await db.commit()

        logger.info(
            "seller_account_refreshed",
            seller_id=seller_id,
            payouts_enabled=status.payouts_enabled,
            charges_enabled=status.charges_enabled,
        )
        return seller

    async def set_payout_schedule(
        self,
        seller_id: str,
        schedule: PayoutSchedule,
        db: AsyncSession,
        now: Optional[datetime] = None,
    ) -> SellerAccount:
        """
        Persist a payout schedule and the next payout date it implies.

        Raises:
            InvalidPayoutSchedule: If the schedule is malformed
            SellerNotFound: If the seller is unknown
        """
        schedule.validate()
        seller = await self.get(seller_id, db)

        seller.payout_schedule_type = schedule.schedule_type
        seller.payout_day = schedule.payout_day
        seller.payout_date = schedule.payout_date
        seller.next_payout_date = calculate_next_payout_date(schedule, now or utcnow())
        await db.commit()

        logger.info(
            "seller_payout_schedule_set",
            seller_id=seller_id,
            schedule_type=schedule.schedule_type,
            next_payout_date=(
                seller.next_payout_date.isoformat() if seller.next_payout_date else None
            ),
        )
        return seller

    async def list_sellers(
        self, db: AsyncSession, page: int = 1, page_size: int = 50
    ) -> Dict[str, Any]:
        """Seller accounts with their earnings summaries, ordered by seller id."""
        total = (await db.execute(select(func.count(SellerAccount.seller_id)))).scalar_one()
        result = await db.execute(
            select(SellerAccount)
            .order_by(SellerAccount.seller_id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        sellers = [
            {"account": seller, "summary": await self.ledger.summarize_for_seller(seller.seller_id, db)}
            for seller in result.scalars().all()
        ]
        return {"sellers": sellers, "pagination": paginate(page, page_size, total)}

    async def seller_details(self, seller_id: str, db: AsyncSession) -> Dict[str, Any]:
        """
        One seller's account, earnings summary and catalog counts.

        Raises:
            SellerNotFound: If the seller is unknown
        """
        seller = await self.get(seller_id, db)
        product_count, active_count = (
            await db.execute(
                select(
                    func.count(Product.id),
                    func.coalesce(func.sum(case((Product.active.is_(True), 1), else_=0)), 0),
                ).where(Product.seller_id == seller_id)
            )
        ).one()
        return {
            "account": seller,
            "summary": await self.ledger.summarize_for_seller(seller_id, db),
            "product_count": int(product_count),
            "active_product_count": int(active_count),
        }
