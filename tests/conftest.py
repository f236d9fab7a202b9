"""
Pytest configuration and fixtures.

Tests run against a throwaway SQLite database per test and a mocked Stripe
client; no external services are needed.
"""
import os

os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_fake_key_for_testing")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_fake_secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("APP_ENV", "test")

import hashlib
import hmac
import itertools
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncGenerator, Callable, Dict, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from settlement.config import Settings, get_settings
from settlement.core.locking import OrderLocks
from settlement.core.orders import CartItem, OrderService
from settlement.core.reconciliation import PayoutReconciler
from settlement.core.sellers import SellerAccountService
from settlement.core.settlement import SettlementService
from settlement.database.models import Base, Order, Product, SellerAccount
from settlement.integrations.stripe_client import AccountStatus, PaymentHandle, StripeClient

get_settings.cache_clear()

PAID_AT = datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_webhook_secret="whsec_test_fake_secret",
        database_url="sqlite+aiosqlite:///:memory:",
        app_name="marketplace-settlement-test",
        app_env="test",
        log_level="DEBUG",
        tax_rate_bps=725,
        platform_fee_rate_bps=325,
        processor_fee_rate_bps=290,
        payment_hold_days=5,
        transfer_timeout_seconds=0.2,
    )


@pytest_asyncio.fixture
async def test_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, Any]:
    """File-backed SQLite engine so several sessions share one database."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def mock_stripe_client() -> AsyncMock:
    """
    Stripe client double.

    Payment intents and transfers get unique ids; every connected account
    reports payouts enabled.
    """
    client = AsyncMock(spec=StripeClient)
    counter = itertools.count(1)

    async def create_payment_intent(**kwargs: Any) -> PaymentHandle:
        n = next(counter)
        return PaymentHandle(
            id=f"pi_test_{n}",
            client_secret=f"pi_test_{n}_secret",
            status="requires_payment_method",
        )

    async def transfer(**kwargs: Any) -> str:
        return f"tr_test_{next(counter)}"

    async def retrieve_account_status(account_id: str) -> AccountStatus:
        return AccountStatus(
            account_id=account_id,
            charges_enabled=True,
            payouts_enabled=True,
            details_submitted=True,
        )

    client.create_payment_intent = AsyncMock(side_effect=create_payment_intent)
    client.transfer = AsyncMock(side_effect=transfer)
    client.retrieve_payment_status = AsyncMock(return_value="succeeded")
    client.retrieve_account_status = AsyncMock(side_effect=retrieve_account_status)
    client.list_transfers = AsyncMock(return_value=[])
    client.create_connected_account = AsyncMock(return_value="acct_test_new")
    client.create_account_link = AsyncMock(
        return_value="https://connect.stripe.com/setup/e/acct_test_new/link"
    )
    return client


@pytest.fixture
def order_locks() -> OrderLocks:
    return OrderLocks()


@pytest.fixture
def order_service(mock_stripe_client: AsyncMock, test_settings: Settings) -> OrderService:
    return OrderService(mock_stripe_client, settings=test_settings)


@pytest.fixture
def seller_service(mock_stripe_client: AsyncMock, test_settings: Settings) -> SellerAccountService:
    return SellerAccountService(mock_stripe_client, settings=test_settings)


@pytest.fixture
def settlement_service(
    mock_stripe_client: AsyncMock, test_settings: Settings, order_locks: OrderLocks
) -> SettlementService:
    return SettlementService(mock_stripe_client, settings=test_settings, locks=order_locks)


@pytest.fixture
def reconciler(
    mock_stripe_client: AsyncMock, test_settings: Settings, order_locks: OrderLocks
) -> PayoutReconciler:
    return PayoutReconciler(mock_stripe_client, settings=test_settings, locks=order_locks)


@pytest_asyncio.fixture
async def marketplace(test_db: AsyncSession) -> Dict[str, Any]:
    """
    Two sellers with one product each.

    seller_a sells product-a at $100.00, seller_b sells product-b at $50.00.
    Both have payout-enabled connected accounts.
    """
    test_db.add_all(
        [
            Product(id="product-a", seller_id="seller_a", name="Desk lamp", price_cents=10000),
            Product(id="product-b", seller_id="seller_b", name="Notebook", price_cents=5000),
            Product(
                id="product-retired",
                seller_id="seller_a",
                name="Old lamp",
                price_cents=8000,
                active=False,
            ),
            Product(id="product-unpriced", seller_id="seller_b", name="Sample", price_cents=None),
            SellerAccount(
                seller_id="seller_a",
                stripe_account_id="acct_seller_a",
                charges_enabled=True,
                payouts_enabled=True,
                details_submitted=True,
            ),
            SellerAccount(
                seller_id="seller_b",
                stripe_account_id="acct_seller_b",
                charges_enabled=True,
                payouts_enabled=True,
                details_submitted=True,
            ),
        ]
    )
    await test_db.commit()
    return {"sellers": ["seller_a", "seller_b"], "products": ["product-a", "product-b"]}


@pytest.fixture
def two_seller_cart() -> list[CartItem]:
    """$100 from seller_a plus 2 x $50 from seller_b: subtotal $200.00."""
    return [CartItem(product_id="product-a", quantity=1), CartItem(product_id="product-b", quantity=2)]


@pytest.fixture
def create_paid_order(
    order_service: OrderService,
    settlement_service: SettlementService,
    marketplace: Dict[str, Any],
    two_seller_cart: list[CartItem],
) -> Callable[..., Any]:
    """Factory creating an order and confirming its payment at PAID_AT."""

    async def _create(
        db: AsyncSession,
        buyer_id: str = "buyer-1",
        items: Optional[list[CartItem]] = None,
        paid_at: datetime = PAID_AT,
    ) -> Order:
        checkout = await order_service.create_order(buyer_id, items or two_seller_cart, db)
        order = await settlement_service.on_payment_confirmed(
            checkout.order.stripe_payment_intent_id, db, now=paid_at
        )
        assert order is not None
        return order

    return _create


async def reload(session_factory: async_sessionmaker[AsyncSession], model: Any, key: Any) -> Any:
    """Read a row through a fresh session."""
    async with session_factory() as session:
        return await session.get(model, key)


@pytest.fixture
def mock_redis() -> AsyncMock:
    redis = AsyncMock()
    redis.exists.return_value = 0
    redis.setex.return_value = True
    return redis


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    mock_stripe_client: AsyncMock,
    mock_redis: AsyncMock,
    test_settings: Settings,
    order_locks: OrderLocks,
) -> AsyncGenerator[AsyncClient, Any]:
    """HTTP client wired to the test database and Stripe double."""
    from settlement.api import dependencies, routes
    from settlement.api.main import app
    from settlement.database.connection import get_db
    from settlement.integrations.webhook_handler import WebhookHandler
    from settlement.workers.release_worker import ReleaseScheduler

    async def override_get_db() -> AsyncGenerator[AsyncSession, Any]:
        async with session_factory() as session:
            yield session

    settlement = SettlementService(mock_stripe_client, settings=test_settings, locks=order_locks)
    webhook_handler = WebhookHandler(redis_client=mock_redis)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[dependencies.get_stripe_client] = lambda: mock_stripe_client
    app.dependency_overrides[dependencies.get_webhook_handler] = lambda: webhook_handler
    app.dependency_overrides[dependencies.get_order_service] = lambda: OrderService(
        mock_stripe_client, settings=test_settings
    )
    app.dependency_overrides[dependencies.get_settlement_service] = lambda: settlement
    app.dependency_overrides[dependencies.get_seller_service] = lambda: SellerAccountService(
        mock_stripe_client, settings=test_settings
    )
    app.dependency_overrides[dependencies.get_reconciler] = lambda: PayoutReconciler(
        mock_stripe_client, settings=test_settings, locks=order_locks
    )
    app.dependency_overrides[routes.get_release_scheduler] = lambda: ReleaseScheduler(
        session_factory, settlement
    )

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def headers(user_id: str, role: str = "user") -> Dict[str, str]:
    return {"X-User-ID": user_id, "X-User-Role": role}


def make_event(
    event_type: str,
    payment_intent_id: str = "pi_test_1",
    event_id: str = "evt_test_1",
    last_payment_error: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Stripe event body for a payment intent."""
    obj: Dict[str, Any] = {"id": payment_intent_id, "object": "payment_intent"}
    if last_payment_error is not None:
        obj["last_payment_error"] = last_payment_error
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }


def sign(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Stripe-Signature header for a payload."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"
