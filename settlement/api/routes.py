"""
API routes for the settlement engine.

Domain errors propagate to the exception handlers registered in main.py,
which map them to HTTP status codes.
"""
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.core.orders import CartItem, OrderService
from settlement.core.payout_schedule import PayoutSchedule
from settlement.core.payouts import PayoutLedger
from settlement.core.reconciliation import PayoutReconciler
from settlement.core.sellers import SellerAccountService
from settlement.core.settlement import SettlementService
from settlement.database.connection import get_db, get_session_factory
from settlement.integrations.webhook_handler import WebhookHandler
from settlement.monitoring.health import HealthCheck
from settlement.workers.release_worker import ReleaseScheduler

from .dependencies import (
    Identity,
    get_identity,
    get_order_service,
    get_payout_ledger,
    get_reconciler,
    get_seller_service,
    get_settlement_service,
    get_webhook_handler,
    require_admin,
)
from .schemas import (
    ConfirmPaymentRequest,
    CreateOrderRequest,
    CreateOrderResponse,
    HealthCheckResponse,
    OrderListResponse,
    OrderResponse,
    PayoutListResponse,
    PayoutResponse,
    PayoutScheduleRequest,
    ReconciliationResponse,
    ReleaseResponse,
    ReleaseScheduleRequest,
    ReleaseSweepResponse,
    RetryPayoutResponse,
    OnboardingRequest,
    OnboardingResponse,
    SellerAccountResponse,
    SellerDetailResponse,
    SellerListResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

order_router = APIRouter(prefix="/orders", tags=["orders"])
payout_router = APIRouter(prefix="/payouts", tags=["payouts"])
seller_router = APIRouter(prefix="/sellers", tags=["sellers"])
admin_router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])

health_check = HealthCheck()


def get_release_scheduler(
    settlement: SettlementService = Depends(get_settlement_service),
) -> ReleaseScheduler:
    return ReleaseScheduler(get_session_factory(), settlement)


@order_router.post(
    "",
    response_model=CreateOrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an order",
    description="Price the cart, snapshot fees and open a payment intent for the total",
)
async def create_order(
    request: CreateOrderRequest,
    identity: Identity = Depends(get_identity),
    orders: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    logger.info("api_create_order_request", items=len(request.items))

    checkout = await orders.create_order(
        buyer_id=identity.user_id,
        items=[CartItem(product_id=i.product_id, quantity=i.quantity) for i in request.items],
        db=db,
    )
    return {
        "order": checkout.order,
        "client_secret": checkout.client_secret,
        "breakdown": checkout.breakdown,
    }


@order_router.post(
    "/confirm",
    response_model=OrderResponse,
    summary="Confirm a payment",
    description="Check the payment status with Stripe and apply it to the order",
)
async def confirm_payment(
    request: ConfirmPaymentRequest,
    identity: Identity = Depends(get_identity),
    settlement: SettlementService = Depends(get_settlement_service),
    db: AsyncSession = Depends(get_db),
) -> Any:
    return await settlement.confirm_payment(request.payment_intent_id, identity.user_id, db)


@order_router.get("", response_model=OrderListResponse, summary="Buyer order history")
async def list_my_orders(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=10, ge=1, le=100),
    identity: Identity = Depends(get_identity),
    orders: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await orders.list_orders_for_buyer(identity.user_id, db, page, page_size)


@order_router.get("/{order_id}", response_model=OrderResponse, summary="Get an order")
async def get_order(
    order_id: uuid.UUID,
    identity: Identity = Depends(get_identity),
    orders: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db),
) -> Any:
    return await orders.get_order(order_id, identity.user_id, db, is_admin=identity.is_admin)


@payout_router.get(
    "",
    response_model=PayoutListResponse,
    summary="Seller payouts",
    description="Page of the caller's payouts with an earnings summary",
)
async def list_my_payouts(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    identity: Identity = Depends(get_identity),
    ledger: PayoutLedger = Depends(get_payout_ledger),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await ledger.list_for_seller(identity.user_id, db, page, page_size)


@payout_router.get("/{payout_id}", response_model=PayoutResponse, summary="Get a payout")
async def get_my_payout(
    payout_id: uuid.UUID,
    identity: Identity = Depends(get_identity),
    ledger: PayoutLedger = Depends(get_payout_ledger),
    db: AsyncSession = Depends(get_db),
) -> Any:
    return await ledger.get_for_seller(payout_id, identity.user_id, db)


@seller_router.post(
    "/me/onboarding",
    response_model=OnboardingResponse,
    summary="Start payout onboarding",
    description="Create the caller's connected account if missing and return an onboarding link",
)
async def start_onboarding(
    request: OnboardingRequest,
    identity: Identity = Depends(get_identity),
    sellers: SellerAccountService = Depends(get_seller_service),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    link = await sellers.start_onboarding(identity.user_id, db, email=request.email)
    return {"seller": link.seller, "onboarding_url": link.url}


@seller_router.get(
    "/me",
    response_model=SellerAccountResponse,
    summary="Payout onboarding status",
    description="Refresh the caller's connected account capabilities from Stripe",
)
async def get_my_seller_account(
    identity: Identity = Depends(get_identity),
    sellers: SellerAccountService = Depends(get_seller_service),
    db: AsyncSession = Depends(get_db),
) -> Any:
    return await sellers.refresh_seller_account(identity.user_id, db)


@admin_router.get("/orders", response_model=OrderListResponse, summary="All orders")
async def admin_list_orders(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    orders: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await orders.admin_list_orders(db, page, page_size)


@admin_router.put(
    "/orders/{order_id}/release-schedule",
    response_model=OrderResponse,
    summary="Set release schedule",
    description="Override the release time or hold period of an unreleased order",
)
async def admin_set_release_schedule(
    order_id: uuid.UUID,
    request: ReleaseScheduleRequest,
    settlement: SettlementService = Depends(get_settlement_service),
    db: AsyncSession = Depends(get_db),
) -> Any:
    logger.info(
        "api_set_release_schedule",
        order_id=str(order_id),
        hold_days=request.hold_days,
        release_at=request.release_at.isoformat() if request.release_at else None,
    )
    return await settlement.set_release_schedule(
        order_id, db, release_at=request.release_at, hold_days=request.hold_days
    )


@admin_router.post(
    "/orders/{order_id}/release",
    response_model=ReleaseResponse,
    summary="Release an order now",
)
async def admin_release_order(
    order_id: uuid.UUID,
    settlement: SettlementService = Depends(get_settlement_service),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    result = await settlement.release(order_id, db, trigger="admin")
    return result.as_dict()


@admin_router.post(
    "/release-due",
    response_model=ReleaseSweepResponse,
    summary="Release all due orders",
)
async def admin_release_all_due(
    scheduler: ReleaseScheduler = Depends(get_release_scheduler),
) -> Dict[str, int]:
    return await scheduler.run_once()


@admin_router.post(
    "/payouts/{payout_id}/retry",
    response_model=RetryPayoutResponse,
    summary="Retry a failed or blocked payout",
)
async def admin_retry_payout(
    payout_id: uuid.UUID,
    settlement: SettlementService = Depends(get_settlement_service),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await settlement.retry_payout(payout_id, db)


@admin_router.get(
    "/payouts/blocked",
    response_model=list[PayoutResponse],
    summary="Blocked payouts",
    description="Pending payouts on released orders, waiting for a seller payout destination",
)
async def admin_list_blocked_payouts(
    ledger: PayoutLedger = Depends(get_payout_ledger),
    db: AsyncSession = Depends(get_db),
) -> Any:
    return await ledger.list_blocked(db)


@admin_router.get("/sellers", response_model=SellerListResponse, summary="All sellers")
async def admin_list_sellers(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    sellers: SellerAccountService = Depends(get_seller_service),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await sellers.list_sellers(db, page, page_size)


@admin_router.get(
    "/sellers/{seller_id}",
    response_model=SellerDetailResponse,
    summary="Seller details",
    description="Connected account, earnings summary and catalog counts of one seller",
)
async def admin_get_seller(
    seller_id: str,
    sellers: SellerAccountService = Depends(get_seller_service),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await sellers.seller_details(seller_id, db)


@admin_router.put(
    "/sellers/{seller_id}/payout-schedule",
    response_model=SellerAccountResponse,
    summary="Set seller payout schedule",
)
async def admin_set_payout_schedule(
    seller_id: str,
    request: PayoutScheduleRequest,
    sellers: SellerAccountService = Depends(get_seller_service),
    db: AsyncSession = Depends(get_db),
) -> Any:
    schedule = PayoutSchedule(
        schedule_type=request.schedule_type,
        payout_day=request.payout_day,
        payout_date=request.payout_date,
    )
    return await sellers.set_payout_schedule(seller_id, schedule, db)


@admin_router.post(
    "/sellers/{seller_id}/refresh",
    response_model=SellerAccountResponse,
    summary="Refresh seller account capabilities from Stripe",
)
async def admin_refresh_seller(
    seller_id: str,
    sellers: SellerAccountService = Depends(get_seller_service),
    db: AsyncSession = Depends(get_db),
) -> Any:
    return await sellers.refresh_seller_account(seller_id, db)


@admin_router.post(
    "/reconcile-payouts",
    response_model=ReconciliationResponse,
    summary="Reconcile stuck payouts",
)
async def admin_reconcile_payouts(
    older_than_minutes: Optional[int] = Query(default=None, ge=0),
    reconciler: PayoutReconciler = Depends(get_reconciler),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    older_than = timedelta(minutes=older_than_minutes) if older_than_minutes is not None else None
    return await reconciler.reconcile_stuck(db, older_than=older_than)


@webhook_router.post(
    "/stripe",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    description="Verify and apply Stripe payment events",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    webhook_handler: WebhookHandler = Depends(get_webhook_handler),
    settlement: SettlementService = Depends(get_settlement_service),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    body = await request.body()
    event = webhook_handler.verify_signature(body, stripe_signature)
    return await webhook_handler.process_event(event, settlement, db)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
)
async def health() -> Dict[str, Any]:
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness() -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
