"""
FastAPI dependencies: caller identity and service wiring.

Authentication happens upstream; the gateway forwards the verified identity
in the X-User-ID and X-User-Role headers.
"""
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

import structlog
from fastapi import Depends, Header, HTTPException, status

from settlement.core.orders import OrderService
from settlement.core.payouts import PayoutLedger
from settlement.core.reconciliation import PayoutReconciler
from settlement.core.sellers import SellerAccountService
from settlement.core.settlement import SettlementService
from settlement.integrations.stripe_client import StripeClient
from settlement.integrations.webhook_handler import WebhookHandler

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


async def get_identity(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
    x_user_role: Optional[str] = Header(default=None, alias="X-User-Role"),
) -> Identity:
    """Identity of the caller; 401 when the gateway supplied none."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing caller identity",
        )
    identity = Identity(user_id=x_user_id, role=(x_user_role or "user").lower())
    structlog.contextvars.bind_contextvars(user_id=identity.user_id)
    return identity


async def require_admin(identity: Identity = Depends(get_identity)) -> Identity:
    if not identity.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator role required",
        )
    return identity


@lru_cache()
def get_stripe_client() -> StripeClient:
    """Process-wide Stripe client (shares one circuit breaker)."""
    return StripeClient()


@lru_cache()
def get_webhook_handler() -> WebhookHandler:
    return WebhookHandler()


def get_payout_ledger() -> PayoutLedger:
    return PayoutLedger()


def get_order_service(stripe_client: StripeClient = Depends(get_stripe_client)) -> OrderService:
    return OrderService(stripe_client)


def get_settlement_service(
    stripe_client: StripeClient = Depends(get_stripe_client),
) -> SettlementService:
    return SettlementService(stripe_client)


def get_seller_service(
    stripe_client: StripeClient = Depends(get_stripe_client),
) -> SellerAccountService:
    return SellerAccountService(stripe_client)


def get_reconciler(stripe_client: StripeClient = Depends(get_stripe_client)) -> PayoutReconciler:
    return PayoutReconciler(stripe_client)
