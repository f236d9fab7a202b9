"""
Order creation and lookup.

Creating an order prices the cart from the catalog, snapshots the fee rates
and hold period, and opens a payment intent for the total in one unit of
work: if the processor call fails, nothing is persisted.
"""
import asyncio
import secrets
import string
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.config import Settings, get_settings
from settlement.core.exceptions import (
    EmptyCart,
    InvalidItems,
    OrderNotFound,
    OrderNumberCollision,
    PaymentProcessorError,
)
from settlement.core.fees import FeeRates, OrderBreakdown, compute_order_breakdown, format_rate
from settlement.core.payouts import paginate
from settlement.database.models import Order, OrderLine, Product
from settlement.integrations.stripe_client import StripeClient, StripeError
from settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

_ORDER_SUFFIX_ALPHABET = string.digits + string.ascii_uppercase


def generate_order_number() -> str:
    """ORD-<last 8 digits of the millisecond clock>-<6 base36 characters>."""
    millis = str(int(time.time() * 1000))[-8:]
    suffix = "".join(secrets.choice(_ORDER_SUFFIX_ALPHABET) for _ in range(6))
    return f"ORD-{millis}-{suffix}"


@dataclass(frozen=True)
class CartItem:
    product_id: str
    quantity: int


@dataclass(frozen=True)
class PricedLine:
    """Catalog data captured for one cart item."""

    product_id: str
    seller_id: str
    name: str
    unit_price_cents: int
    quantity: int

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity


@dataclass(frozen=True)
class CheckoutResult:
    """Created order plus what the buyer needs to complete payment."""

    order: Order
    client_secret: Optional[str]
    breakdown: OrderBreakdown


class OrderService:
    """
    Creates orders and answers buyer/admin order queries.

    Args:
        stripe_client: Payment processor adapter
        settings: Optional settings (defaults to cached settings)
        order_number_factory: Generator for human readable order numbers
    """

    def __init__(
        self,
        stripe_client: StripeClient,
        settings: Optional[Settings] = None,
        order_number_factory: Callable[[], str] = generate_order_number,
    ):
        self.stripe_client = stripe_client
        self.settings = settings or get_settings()
        self.order_number_factory = order_number_factory

    async def _price_cart(
        self, items: Sequence[CartItem], db: AsyncSession
    ) -> List[PricedLine]:
        """
        Snapshot catalog data for every cart item.

        Raises:
            EmptyCart: If no items were supplied
            InvalidItems: If a quantity is below one or a product is unknown,
                inactive or unpriced
        """
        if not items:
            raise EmptyCart("Order must contain at least one item")

        bad_quantity = [item.product_id for item in items if item.quantity < 1]
        if bad_quantity:
            raise InvalidItems("Quantity must be at least 1", product_ids=bad_quantity)

        product_ids = {item.product_id for item in items}
        result = await db.execute(select(Product).where(Product.id.in_(product_ids)))
        catalog: Dict[str, Product] = {p.id: p for p in result.scalars().all()}

        invalid = sorted(
            pid
            for pid in product_ids
            if pid not in catalog
            or not catalog[pid].active
            or not catalog[pid].price_cents
            or catalog[pid].price_cents <= 0
        )
        if invalid:
            raise InvalidItems(
                f"Products not available for purchase: {', '.join(invalid)}",
                product_ids=invalid,
            )

        # Duplicate product ids stay separate lines
        return [
            PricedLine(
                product_id=item.product_id,
                seller_id=catalog[item.product_id].seller_id,
                name=catalog[item.product_id].name,
                unit_price_cents=catalog[item.product_id].price_cents,
                quantity=item.quantity,
            )
            for item in items
        ]

    async def create_order(
        self, buyer_id: str, items: Sequence[CartItem], db: AsyncSession
    ) -> CheckoutResult:
        """
        Create an order and its payment intent.

        Args:
            buyer_id: Verified buyer identity
            items: Requested products and quantities
            db: Database session

        Returns:
            CheckoutResult: Order, client secret and amount breakdown

        Raises:
            EmptyCart: If no items were supplied
            InvalidItems: If any item cannot be purchased
            OrderNumberCollision: If no unique order number could be allocated
            PaymentProcessorError: If the payment intent could not be created
        """
        lines = await self._price_cart(items, db)
        subtotal = sum(line.line_total_cents for line in lines)
        rates = FeeRates.from_settings(self.settings)
        breakdown = compute_order_breakdown(subtotal, rates)

        order: Optional[Order] = None
        for attempt in range(1, self.settings.order_number_attempts + 1):
            candidate = Order(
                id=uuid.uuid4(),
                order_number=self.order_number_factory(),
                buyer_id=buyer_id,
                currency=self.settings.currency,
                subtotal_cents=breakdown.subtotal_cents,
                tax_cents=breakdown.tax_cents,
                platform_fee_cents=breakdown.platform_fee_cents,
                total_cents=breakdown.total_cents,
                tax_rate_bps=rates.tax_rate_bps,
                platform_fee_rate_bps=rates.platform_fee_rate_bps,
                processor_fee_rate_bps=rates.processor_fee_rate_bps,
                payment_status="pending",
                status="pending",
                hold_days=self.settings.payment_hold_days,
                held=False,
                released=False,
                payouts=[],
            )
            candidate.lines = [
                OrderLine(
                    product_id=line.product_id,
                    seller_id=line.seller_id,
                    name=line.name,
                    unit_price_cents=line.unit_price_cents,
                    quantity=line.quantity,
                )
                for line in lines
            ]
            db.add(candidate)
            try:
                await db.flush()
            except IntegrityError:
                await db.rollback()
                logger.warning(
                    "order_number_collision",
                    order_number=candidate.order_number,
                    attempt=attempt,
                )
                continue
            order = candidate
            break

        if order is None:
            raise OrderNumberCollision(
                f"Could not allocate a unique order number after "
                f"{self.settings.order_number_attempts} attempts"
            )

        try:
            handle = await asyncio.wait_for(
                self.stripe_client.create_payment_intent(
                    amount_cents=order.total_cents,
                    currency=order.currency,
                    idempotency_key=f"order-{order.id}",
                    metadata={
                        "order_id": str(order.id),
                        "order_number": order.order_number,
                        "buyer_id": buyer_id,
                        "tax_rate": format_rate(order.tax_rate_bps),
                        "platform_fee_rate": format_rate(order.platform_fee_rate_bps),
                    },
                ),
                timeout=self.settings.transfer_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            await db.rollback()
            logger.error(
                "order_payment_intent_timeout",
                order_number=order.order_number,
                timeout=self.settings.transfer_timeout_seconds,
            )
            raise PaymentProcessorError(
                f"Payment intent creation timed out after "
                f"{self.settings.transfer_timeout_seconds:g}s"
            ) from e
        except StripeError as e:
            await db.rollback()
            logger.error(
                "order_payment_intent_failed",
                order_number=order.order_number,
                error=str(e),
                error_type=e.error_type.value,
            )
            raise PaymentProcessorError(f"Could not create payment intent: {e}") from e

        order.stripe_payment_intent_id = handle.id
        await db.commit()

        metrics.record_order_created(order.currency, order.total_cents)
        logger.info(
            "order_created",
            order_id=str(order.id),
            order_number=order.order_number,
            buyer_id=buyer_id,
            total_cents=order.total_cents,
            sellers=order.seller_ids,
            payment_intent_id=handle.id,
        )

        return CheckoutResult(order=order, client_secret=handle.client_secret, breakdown=breakdown)

    async def get_order(
        self,
        order_id: uuid.UUID,
        requesting_user_id: str,
        db: AsyncSession,
        is_admin: bool = False,
    ) -> Order:
        """
        Fetch an order visible to the requester.

        Orders of other buyers are reported as missing.

        Raises:
            OrderNotFound: If the order does not exist or is not visible
        """
        order = await db.get(Order, order_id)
        if order is None or (not is_admin and order.buyer_id != requesting_user_id):
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    async def get_by_payment_intent(
        self, payment_intent_id: str, db: AsyncSession
    ) -> Optional[Order]:
        result = await db.execute(
            select(Order).where(Order.stripe_payment_intent_id == payment_intent_id)
        )
        return result.scalar_one_or_none()

    async def _page(
        self, db: AsyncSession, page: int, page_size: int, buyer_id: Optional[str] = None
    ) -> Dict[str, Any]:
        count_stmt = select(func.count(Order.id))
        stmt = select(Order)
        if buyer_id is not None:
            count_stmt = count_stmt.where(Order.buyer_id == buyer_id)
            stmt = stmt.where(Order.buyer_id == buyer_id)

        total = (await db.execute(count_stmt)).scalar_one()
        stmt = (
            stmt.order_by(Order.created_at.desc(), Order.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        orders = list((await db.execute(stmt)).scalars().all())
        return {"orders": orders, "pagination": paginate(page, page_size, total)}

    async def list_orders_for_buyer(
        self, buyer_id: str, db: AsyncSession, page: int = 1, page_size: int = 10
    ) -> Dict[str, Any]:
        """A buyer's order history, newest first."""
        return await self._page(db, page, page_size, buyer_id=buyer_id)

    async def admin_list_orders(
        self, db: AsyncSession, page: int = 1, page_size: int = 50
    ) -> Dict[str, Any]:
        """All orders with hold/release fields, newest first."""
        return await self._page(db, page, page_size)
