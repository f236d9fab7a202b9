"""
Settlement state machine.

Drives an order from payment through the hold period to the release of
funds to every seller on it:

    created -> awaiting_payment -> {paid, payment_failed} -> held -> released

Every transition runs under the per-order lock. Transfers are claimed with a
compare-and-set on the payout status, so even concurrent workers never pay a
seller twice, and each transfer outcome is committed as soon as it is known.
"""
import asyncio
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.config import Settings, get_settings
from settlement.config.settings import MAX_HOLD_DAYS, MIN_HOLD_DAYS, clamp_hold_days
from settlement.core.exceptions import (
    AlreadyReleased,
    InvalidHoldDays,
    OrderNotFound,
    PaymentNotSucceeded,
    PaymentProcessorError,
    PayoutNotRetryable,
    SettlementValidationError,
)
from settlement.core.locking import OrderLocks, lock_order_row, order_locks
from settlement.core.payouts import PayoutLedger, is_blocked
from settlement.database.models import Order, Payout, SellerAccount, utcnow
from settlement.integrations.stripe_client import StripeClient, StripeError, TransferRejected
from settlement.integrations.webhook_handler import (
    PaymentFailed,
    PaymentSucceeded,
    ProcessorEvent,
    Unhandled,
)
from settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

FAILED_PAYMENT_STATUSES = ("canceled", "requires_payment_method")


@dataclass
class ReleaseResult:
    """Per-payout outcomes of one release."""

    order_id: uuid.UUID
    released_at: Optional[datetime] = None
    completed: List[uuid.UUID] = field(default_factory=list)
    failed: List[uuid.UUID] = field(default_factory=list)
    blocked: List[uuid.UUID] = field(default_factory=list)
    skipped: List[uuid.UUID] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "order_id": str(self.order_id),
            "released_at": self.released_at.isoformat() if self.released_at else None,
            "completed": [str(p) for p in self.completed],
            "failed": [str(p) for p in self.failed],
            "blocked": [str(p) for p in self.blocked],
            "skipped": [str(p) for p in self.skipped],
        }


class SettlementService:
    """
    Applies payment, release and payout transitions to orders.

    Args:
        stripe_client: Payment processor adapter
        settings: Optional settings (defaults to cached settings)
        locks: Per-order lock registry (defaults to the process-wide one)
        ledger: Payout ledger
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

    @asynccontextmanager
    async def _locked_order(self, order_id: uuid.UUID, db: AsyncSession) -> AsyncIterator[Order]:
        """Hold the order lock and row lock; commit on exit, roll back on error."""
        async with self.locks.hold(order_id):
            try:
                yield await lock_order_row(db, order_id)
            except BaseException:
                await db.rollback()
                raise
            await db.commit()

    async def _order_id_for_reference(
        self, payment_intent_id: str, db: AsyncSession
    ) -> Optional[uuid.UUID]:
        result = await db.execute(
            select(Order.id).where(Order.stripe_payment_intent_id == payment_intent_id)
        )
        return result.scalar_one_or_none()

    async def on_payment_confirmed(
        self,
        payment_intent_id: str,
        db: AsyncSession,
        now: Optional[datetime] = None,
    ) -> Optional[Order]:
        """
        Mark an order paid, start its hold period and create pending payouts.

        Redelivered confirmations are no-ops. A payment that failed earlier
        may still succeed (the buyer retried the card).

        Args:
            payment_intent_id: Processor reference of the payment
            db: Database session
            now: Time of confirmation (default: now)

        Returns:
            Optional[Order]: The order, None when the reference is unknown
        """
        order_id = await self._order_id_for_reference(payment_intent_id, db)
        if order_id is None:
            logger.warning("payment_confirmed_unknown_order", payment_intent_id=payment_intent_id)
            metrics.record_payment_transition("ignored")
            return None

        async with self._locked_order(order_id, db) as order:
            if order.payment_status == "succeeded":
                logger.info(
                    "payment_already_confirmed",
                    order_id=str(order.id),
                    payment_intent_id=payment_intent_id,
                )
                metrics.record_payment_transition("duplicate")
                return order

            previous_status = order.payment_status
            paid_at = now or utcnow()
            order.payment_status = "succeeded"
            order.status = "confirmed"
            order.paid_at = paid_at

            # An admin may have scheduled the release before payment
            if order.release_at is None:
                order.hold_days = clamp_hold_days(order.hold_days)
                order.release_at = paid_at + timedelta(days=order.hold_days)
            order.held = True

            created = await self.ledger.create_pending_payouts(order, db)
            await db.commit()

        metrics.record_payment_transition("confirmed")
        logger.info(
            "payment_confirmed",
            order_id=str(order.id),
            order_number=order.order_number,
            previous_status=previous_status,
            release_at=order.release_at.isoformat(),
            hold_days=order.hold_days,
            payouts_created=len(created),
        )
        return order

    async def on_payment_failed(
        self,
        payment_intent_id: str,
        db: AsyncSession,
        reason: Optional[str] = None,
    ) -> Optional[Order]:
        """
        Mark an order's payment failed.

        Ignored once the payment succeeded; payouts are never touched.

        Returns:
            Optional[Order]: The order, None when the reference is unknown
        """
        order_id = await self._order_id_for_reference(payment_intent_id, db)
        if order_id is None:
            logger.warning("payment_failed_unknown_order", payment_intent_id=payment_intent_id)
            metrics.record_payment_transition("ignored")
            return None

        async with self._locked_order(order_id, db) as order:
            if order.payment_status == "succeeded":
                logger.warning(
                    "payment_failure_after_success_ignored",
                    order_id=str(order.id),
                    payment_intent_id=payment_intent_id,
                )
                metrics.record_payment_transition("ignored")
                return order

            if order.payment_status == "failed":
                metrics.record_payment_transition("duplicate")
                return order

            order.payment_status = "failed"
            order.status = "canceled"

        metrics.record_payment_transition("failed")
        logger.info(
            "payment_failed",
            order_id=str(order.id),
            order_number=order.order_number,
            reason=reason,
        )
        return order

    async def handle_event(self, event: ProcessorEvent, db: AsyncSession) -> Dict[str, Any]:
        """Apply a decoded processor event."""
        if isinstance(event, PaymentSucceeded):
            order = await self.on_payment_confirmed(event.payment_intent_id, db)
        elif isinstance(event, PaymentFailed):
            order = await self.on_payment_failed(event.payment_intent_id, db, event.reason)
        elif isinstance(event, Unhandled):
            logger.info("webhook_event_unhandled", event_id=event.event_id, event_type=event.event_type)
            return {"handled": False}
        else:
            raise TypeError(f"Unknown processor event {event!r}")

        return {
            "handled": True,
            "order_id": str(order.id) if order else None,
            "payment_status": order.payment_status if order else None,
        }

    async def confirm_payment(
        self,
        payment_intent_id: str,
        requesting_user_id: str,
        db: AsyncSession,
    ) -> Order:
        """
        Client-driven confirmation: ask the processor for the payment status.

        A succeeded payment is confirmed, a canceled one or one that needs a
        new payment method is failed, anything still in flight is left alone.

        Raises:
            OrderNotFound: If no order of this buyer carries the reference
            PaymentProcessorError: If the status lookup fails
        """
        result = await db.execute(
            select(Order).where(
                Order.stripe_payment_intent_id == payment_intent_id,
                Order.buyer_id == requesting_user_id,
            )
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFound(f"No order for payment {payment_intent_id}")

        try:
            status = await asyncio.wait_for(
                self.stripe_client.retrieve_payment_status(payment_intent_id),
                timeout=self.settings.transfer_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise PaymentProcessorError(
                f"Payment status lookup timed out after {self.settings.transfer_timeout_seconds:g}s"
            ) from e
        except StripeError as e:
            raise PaymentProcessorError(f"Could not retrieve payment status: {e}") from e

        logger.info(
            "payment_status_retrieved",
            order_id=str(order.id),
            payment_intent_id=payment_intent_id,
            processor_status=status,
        )

        if status == "succeeded":
            return await self.on_payment_confirmed(payment_intent_id, db) or order
        if status in FAILED_PAYMENT_STATUSES:
            return await self.on_payment_failed(payment_intent_id, db, f"payment {status}") or order
        return order

    async def _settle_payout(
        self,
        order: Order,
        payout: Payout,
        db: AsyncSession,
        now: datetime,
    ) -> str:
        """
        Claim one payout and transfer the seller's earnings.

        Returns:
            str: completed, failed, blocked or skipped (claimed elsewhere)
        """
        log = logger.bind(order_id=str(order.id), payout_id=str(payout.id), seller_id=payout.seller_id)
        expected_status = payout.status

        if payout.seller_earnings_cents <= 0:
            # Fees consumed the whole share; nothing to send
            settled = await db.execute(
                update(Payout)
                .where(Payout.id == payout.id, Payout.status == expected_status)
                .values(status="completed", transfer_date=now, failure_reason=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if settled.rowcount != 1:
                log.info("payout_already_claimed", expected_status=expected_status)
                return "skipped"
            payout.status = "completed"
            payout.transfer_date = now
            payout.failure_reason = None
            metrics.record_payout_transfer("nothing_to_transfer")
            log.info("payout_settled_without_transfer", gross_cents=payout.gross_cents)
            return "completed"

        seller = await db.get(SellerAccount, payout.seller_id)
        if seller is None or not seller.has_payout_destination:
            log.warning(
                "payout_blocked",
                has_account=bool(seller and seller.stripe_account_id),
                payouts_enabled=bool(seller and seller.payouts_enabled),
            )
            metrics.record_payout_transfer("blocked")
            return "blocked"

        claim = await db.execute(
            update(Payout)
            .where(Payout.id == payout.id, Payout.status == expected_status)
            .values(status="processing", failure_reason=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if claim.rowcount != 1:
            await db.commit()
            log.info("payout_already_claimed", expected_status=expected_status)
            return "skipped"
        await db.commit()
        payout.status = "processing"

        idempotency_key = f"payout-{payout.id}-{payout.transfer_attempts}"
        log.info(
            "payout_transfer_started",
            amount_cents=payout.seller_earnings_cents,
            destination=seller.stripe_account_id,
            idempotency_key=idempotency_key,
        )

        try:
            transfer_id = await asyncio.wait_for(
                self.stripe_client.transfer(
                    amount_cents=payout.seller_earnings_cents,
                    currency=order.currency,
                    destination=seller.stripe_account_id,
                    idempotency_key=idempotency_key,
                    transfer_group=order.order_number,
                    metadata={
                        "order_id": str(order.id),
                        "order_number": order.order_number,
                        "seller_id": payout.seller_id,
                        "payout_id": str(payout.id),
                    },
                ),
                timeout=self.settings.transfer_timeout_seconds,
            )
        except asyncio.TimeoutError:
            # Same key on retry lets the processor deduplicate a late success
            payout.status = "failed"
            payout.failure_reason = (
                f"transfer outcome unknown; timed out after "
                f"{self.settings.transfer_timeout_seconds:g}s"
            )
            await db.commit()
            metrics.record_payout_transfer("timeout")
            log.error("payout_transfer_timeout", timeout=self.settings.transfer_timeout_seconds)
            return "failed"
        except StripeError as e:
            payout.status = "failed"
            payout.failure_reason = str(e) or e.__class__.__name__
            if isinstance(e, TransferRejected) or e.processor_answered:
                payout.transfer_attempts += 1
            await db.commit()
            metrics.record_payout_transfer("failed")
            log.error(
                "payout_transfer_failed",
                error=str(e),
                error_type=e.error_type.value,
                transfer_attempts=payout.transfer_attempts,
            )
            return "failed"
        except Exception as e:
            # Outcome unknown, so the attempt counter and key stay as they are
            payout.status = "failed"
            payout.failure_reason = str(e) or e.__class__.__name__
            await db.commit()
            metrics.record_payout_transfer("failed")
            log.exception("payout_transfer_error", error_type=e.__class__.__name__)
            return "failed"

        payout.status = "completed"
        payout.stripe_transfer_id = transfer_id
        payout.transfer_date = now
        payout.failure_reason = None
        await db.commit()

        metrics.record_payout_transfer("completed", payout.seller_earnings_cents)
        log.info("payout_transfer_completed", transfer_id=transfer_id)
        return "completed"

    async def release(
        self,
        order_id: uuid.UUID,
        db: AsyncSession,
        now: Optional[datetime] = None,
        trigger: str = "admin",
    ) -> ReleaseResult:
        """
        Release an order's held funds to its sellers.

        Every pending payout is attempted; a failure for one seller never
        stops the others. Sellers without a usable payout destination stay
        pending (blocked). Payouts with no earnings complete without a
        transfer. The order is marked released afterwards regardless of
        individual outcomes.

        Args:
            order_id: Order to release
            db: Database session
            now: Release time (default: now)
            trigger: admin or scheduler, for metrics

        Returns:
            ReleaseResult: Payout ids grouped by outcome

        Raises:
            OrderNotFound: If the order does not exist
            AlreadyReleased: If the order was released before
            PaymentNotSucceeded: If the order's payment has not succeeded
        """
        now = now or utcnow()
        result = ReleaseResult(order_id=order_id)

        async with self._locked_order(order_id, db) as order:
            if order.released:
                raise AlreadyReleased(f"Order {order.order_number} was already released")
            if order.payment_status != "succeeded":
                raise PaymentNotSucceeded(
                    f"Order {order.order_number} payment is {order.payment_status}"
                )

            # Payouts normally exist since confirmation
            await self.ledger.create_pending_payouts(order, db)
            await db.commit()

            logger.info(
                "order_release_started",
                order_id=str(order.id),
                order_number=order.order_number,
                trigger=trigger,
            )

            pending = [p for p in order.payouts if p.status == "pending"]
            for payout in pending:
                outcome = await self._settle_payout(order, payout, db, now)
                getattr(result, outcome).append(payout.id)

            flagged = await db.execute(
                update(Order)
                .where(Order.id == order.id, Order.released.is_(False))
                .values(released=True, released_at=now, held=False, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            await db.refresh(order)

        if flagged.rowcount != 1:
            logger.warning("order_release_flag_lost", order_id=str(order_id))
        else:
            metrics.record_order_released(trigger)

        result.released_at = order.released_at
        logger.info(
            "order_released",
            order_id=str(order_id),
            completed=len(result.completed),
            failed=len(result.failed),
            blocked=len(result.blocked),
            skipped=len(result.skipped),
        )
        return result

    async def retry_payout(
        self,
        payout_id: uuid.UUID,
        db: AsyncSession,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Retry the transfer of one payout.

        Allowed for failed payouts and for blocked ones (pending on a
        released order), typically after the seller fixed their account.

        Returns:
            Dict[str, Any]: The payout and the outcome of this attempt

        Raises:
            PayoutNotFound: If the payout does not exist
            PayoutNotRetryable: If the payout is in any other state
        """
        now = now or utcnow()
        payout = await self.ledger.get(payout_id, db)

        async with self._locked_order(payout.order_id, db) as order:
            await db.refresh(payout)
            if not (payout.status == "failed" or is_blocked(payout, order)):
                raise PayoutNotRetryable(
                    f"Payout {payout_id} is {payout.status}"
                    + (" on an unreleased order" if payout.status == "pending" else "")
                )

            logger.info(
                "payout_retry_requested",
                payout_id=str(payout_id),
                status=payout.status,
                transfer_attempts=payout.transfer_attempts,
            )
            outcome = await self._settle_payout(order, payout, db, now)

        return {"payout": payout, "outcome": outcome}

    async def set_release_schedule(
        self,
        order_id: uuid.UUID,
        db: AsyncSession,
        release_at: Optional[datetime] = None,
        hold_days: Optional[int] = None,
    ) -> Order:
        """
        Override when an order's funds are released.

        With only hold_days, the release date is recomputed from the payment
        time, or from the creation time for unpaid orders.

        Raises:
            InvalidHoldDays: If hold_days is outside [1, 30]
            SettlementValidationError: If neither value is given
            AlreadyReleased: If the order was already released
        """
        if release_at is None and hold_days is None:
            raise SettlementValidationError("Provide release_at or hold_days")
        if hold_days is not None and not MIN_HOLD_DAYS <= hold_days <= MAX_HOLD_DAYS:
            raise InvalidHoldDays(
                f"Hold days must be between {MIN_HOLD_DAYS} and {MAX_HOLD_DAYS}"
            )
        if release_at is not None and release_at.tzinfo is None:
            raise SettlementValidationError("release_at must be timezone-aware")

        async with self._locked_order(order_id, db) as order:
            if order.released:
                raise AlreadyReleased(f"Order {order.order_number} was already released")

            if hold_days is not None:
                order.hold_days = hold_days
            if release_at is not None:
                order.release_at = release_at
            else:
                base = order.paid_at or order.created_at
                order.release_at = base + timedelta(days=order.hold_days)

        logger.info(
            "order_release_schedule_set",
            order_id=str(order_id),
            release_at=order.release_at.isoformat(),
            hold_days=order.hold_days,
        )
        return order
