"""
Unit tests for order creation and lookup.
"""
import asyncio
import uuid
from typing import Any, Dict
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.core.exceptions import (
    EmptyCart,
    InvalidItems,
    OrderNotFound,
    OrderNumberCollision,
    PaymentProcessorError,
)
from settlement.core.orders import CartItem, OrderService, generate_order_number
from settlement.database.models import Order, OrderLine
from settlement.integrations.stripe_client import StripeError, StripeErrorType


async def count_orders(db: AsyncSession) -> int:
    return (await db.execute(select(func.count(Order.id)))).scalar_one()


class TestGenerateOrderNumber:

    @pytest.mark.unit
    def test_format(self) -> None:
        number = generate_order_number()
        prefix, millis, suffix = number.split("-")

        assert prefix == "ORD"
        assert len(millis) == 8 and millis.isdigit()
        assert len(suffix) == 6 and suffix.isalnum() and suffix.upper() == suffix

    @pytest.mark.unit
    def test_numbers_differ(self) -> None:
        assert len({generate_order_number() for _ in range(50)}) == 50


class TestCreateOrder:
    """Test suite for OrderService.create_order."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_two_seller_order_breakdown(
        self,
        test_db: AsyncSession,
        order_service: OrderService,
        marketplace: Dict[str, Any],
        two_seller_cart: list,
        mock_stripe_client: AsyncMock,
    ) -> None:
        """Subtotal $200.00 yields tax 1450, platform fee 650, total 22100."""
        checkout = await order_service.create_order("buyer-1", two_seller_cart, test_db)
        order = checkout.order

        assert order.subtotal_cents == 20000
        assert order.tax_cents == 1450
        assert order.platform_fee_cents == 650
        assert order.total_cents == 22100
        assert checkout.breakdown.total_cents == 22100
        assert (order.tax_rate_bps, order.platform_fee_rate_bps, order.processor_fee_rate_bps) == (
            725,
            325,
            290,
        )
        assert order.payment_status == "pending"
        assert order.hold_days == 5
        assert order.held is False and order.released is False
        assert order.settlement_state == "awaiting_payment"
        assert order.seller_ids == ["seller_a", "seller_b"]
        assert checkout.client_secret == f"{order.stripe_payment_intent_id}_secret"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_intent_covers_total(
        self,
        test_db: AsyncSession,
        order_service: OrderService,
        marketplace: Dict[str, Any],
        two_seller_cart: list,
        mock_stripe_client: AsyncMock,
    ) -> None:
        checkout = await order_service.create_order("buyer-1", two_seller_cart, test_db)

        kwargs = mock_stripe_client.create_payment_intent.await_args.kwargs
        assert kwargs["amount_cents"] == 22100
        assert kwargs["currency"] == "USD"
        assert kwargs["idempotency_key"] == f"order-{checkout.order.id}"
        assert kwargs["metadata"] == {
            "order_id": str(checkout.order.id),
            "order_number": checkout.order.order_number,
            "buyer_id": "buyer-1",
            "tax_rate": "7.25%",
            "platform_fee_rate": "3.25%",
        }

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lines_snapshot_catalog(
        self,
        test_db: AsyncSession,
        order_service: OrderService,
        marketplace: Dict[str, Any],
        two_seller_cart: list,
    ) -> None:
        checkout = await order_service.create_order("buyer-1", two_seller_cart, test_db)

        lines = (
            await test_db.execute(select(OrderLine).where(OrderLine.order_id == checkout.order.id))
        ).scalars().all()
        snapshot = sorted(
            (line.product_id, line.seller_id, line.unit_price_cents, line.quantity)
            for line in lines
        )
        assert snapshot == [
            ("product-a", "seller_a", 10000, 1),
            ("product-b", "seller_b", 5000, 2),
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_cart(
        self, test_db: AsyncSession, order_service: OrderService, mock_stripe_client: AsyncMock
    ) -> None:
        with pytest.raises(EmptyCart):
            await order_service.create_order("buyer-1", [], test_db)

        mock_stripe_client.create_payment_intent.assert_not_awaited()
        assert await count_orders(test_db) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_products_listed(
        self,
        test_db: AsyncSession,
        order_service: OrderService,
        marketplace: Dict[str, Any],
        mock_stripe_client: AsyncMock,
    ) -> None:
        """Unknown, inactive and unpriced products are all reported."""
        items = [
            CartItem(product_id="product-a", quantity=1),
            CartItem(product_id="product-missing", quantity=1),
            CartItem(product_id="product-retired", quantity=1),
            CartItem(product_id="product-unpriced", quantity=1),
        ]

        with pytest.raises(InvalidItems) as exc_info:
            await order_service.create_order("buyer-1", items, test_db)

        assert exc_info.value.product_ids == [
            "product-missing",
            "product-retired",
            "product-unpriced",
        ]
        mock_stripe_client.create_payment_intent.assert_not_awaited()
        assert await count_orders(test_db) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_quantity_below_one(
        self, test_db: AsyncSession, order_service: OrderService, marketplace: Dict[str, Any]
    ) -> None:
        with pytest.raises(InvalidItems, match="Quantity") as exc_info:
            await order_service.create_order(
                "buyer-1", [CartItem(product_id="product-a", quantity=0)], test_db
            )

        assert exc_info.value.product_ids == ["product-a"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_processor_failure_persists_nothing(
        self,
        test_db: AsyncSession,
        order_service: OrderService,
        marketplace: Dict[str, Any],
        two_seller_cart: list,
        mock_stripe_client: AsyncMock,
    ) -> None:
        mock_stripe_client.create_payment_intent.side_effect = StripeError(
            "Stripe unavailable", StripeErrorType.TRANSIENT
        )

        with pytest.raises(PaymentProcessorError):
            await order_service.create_order("buyer-1", two_seller_cart, test_db)

        assert await count_orders(test_db) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_processor_timeout_persists_nothing(
        self,
        test_db: AsyncSession,
        order_service: OrderService,
        marketplace: Dict[str, Any],
        two_seller_cart: list,
        mock_stripe_client: AsyncMock,
    ) -> None:
        async def hang(**kwargs: Any) -> Any:
            await asyncio.sleep(5)
            raise AssertionError("intent creation should have been cancelled")

        mock_stripe_client.create_payment_intent.side_effect = hang

        with pytest.raises(PaymentProcessorError, match="timed out after 0.2s"):
            await order_service.create_order("buyer-1", two_seller_cart, test_db)

        assert await count_orders(test_db) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_order_number_collision_retried(
        self,
        test_db: AsyncSession,
        marketplace: Dict[str, Any],
        two_seller_cart: list,
        mock_stripe_client: AsyncMock,
        test_settings,
    ) -> None:
        numbers = iter(["ORD-00000001-AAAAAA", "ORD-00000001-AAAAAA", "ORD-00000002-BBBBBB"])
        service = OrderService(
            mock_stripe_client, settings=test_settings, order_number_factory=lambda: next(numbers)
        )

        first = await service.create_order("buyer-1", two_seller_cart, test_db)
        first_number = first.order.order_number
        second = await service.create_order("buyer-2", two_seller_cart, test_db)

        assert first_number == "ORD-00000001-AAAAAA"
        assert second.order.order_number == "ORD-00000002-BBBBBB"
        assert await count_orders(test_db) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_order_number_collision_exhausted(
        self,
        test_db: AsyncSession,
        marketplace: Dict[str, Any],
        two_seller_cart: list,
        mock_stripe_client: AsyncMock,
        test_settings,
    ) -> None:
        service = OrderService(
            mock_stripe_client,
            settings=test_settings,
            order_number_factory=lambda: "ORD-00000001-AAAAAA",
        )
        await service.create_order("buyer-1", two_seller_cart, test_db)

        with pytest.raises(OrderNumberCollision):
            await service.create_order("buyer-2", two_seller_cart, test_db)

        assert mock_stripe_client.create_payment_intent.await_count == 1


class TestOrderQueries:
    """Test suite for order lookup and listing."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_order_visible_to_buyer_only(
        self,
        test_db: AsyncSession,
        order_service: OrderService,
        marketplace: Dict[str, Any],
        two_seller_cart: list,
    ) -> None:
        checkout = await order_service.create_order("buyer-1", two_seller_cart, test_db)
        order_id = checkout.order.id

        assert (await order_service.get_order(order_id, "buyer-1", test_db)).id == order_id
        with pytest.raises(OrderNotFound):
            await order_service.get_order(order_id, "buyer-2", test_db)
        assert (await order_service.get_order(order_id, "ops", test_db, is_admin=True)).id == order_id
        with pytest.raises(OrderNotFound):
            await order_service.get_order(uuid.uuid4(), "buyer-1", test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_by_payment_intent(
        self,
        test_db: AsyncSession,
        order_service: OrderService,
        marketplace: Dict[str, Any],
        two_seller_cart: list,
    ) -> None:
        checkout = await order_service.create_order("buyer-1", two_seller_cart, test_db)

        found = await order_service.get_by_payment_intent(
            checkout.order.stripe_payment_intent_id, test_db
        )

        assert found is not None and found.id == checkout.order.id
        assert await order_service.get_by_payment_intent("pi_unknown", test_db) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_buyer_listing_is_scoped_and_paginated(
        self,
        test_db: AsyncSession,
        order_service: OrderService,
        marketplace: Dict[str, Any],
        two_seller_cart: list,
    ) -> None:
        for _ in range(3):
            await order_service.create_order("buyer-1", two_seller_cart, test_db)
        await order_service.create_order("buyer-2", two_seller_cart, test_db)

        first_page = await order_service.list_orders_for_buyer("buyer-1", test_db, page=1, page_size=2)
        second_page = await order_service.list_orders_for_buyer("buyer-1", test_db, page=2, page_size=2)

        assert len(first_page["orders"]) == 2
        assert len(second_page["orders"]) == 1
        assert all(o.buyer_id == "buyer-1" for o in first_page["orders"] + second_page["orders"])
        assert first_page["pagination"] == {
            "page": 1,
            "page_size": 2,
            "total": 3,
            "total_pages": 2,
            "has_next": True,
            "has_prev": False,
        }
        assert second_page["pagination"]["has_next"] is False
        assert second_page["pagination"]["has_prev"] is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_admin_listing_sees_every_buyer(
        self,
        test_db: AsyncSession,
        order_service: OrderService,
        marketplace: Dict[str, Any],
        two_seller_cart: list,
    ) -> None:
        await order_service.create_order("buyer-1", two_seller_cart, test_db)
        await order_service.create_order("buyer-2", two_seller_cart, test_db)

        result = await order_service.admin_list_orders(test_db)

        assert {o.buyer_id for o in result["orders"]} == {"buyer-1", "buyer-2"}
        assert result["pagination"]["page_size"] == 50
        assert result["pagination"]["total"] == 2
