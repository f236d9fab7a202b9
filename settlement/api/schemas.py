"""
Pydantic schemas for API request/response models.

All amounts are integer minor units (cents).
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CartItemRequest(BaseModel):
    """One product in a checkout request."""

    product_id: str = Field(..., min_length=1, description="Catalog product identifier")
    quantity: int = Field(default=1, description="Quantity (at least 1)")


class CreateOrderRequest(BaseModel):
    """Request schema for creating an order."""

    items: List[CartItemRequest] = Field(default_factory=list, description="Cart items")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "items": [
                        {"product_id": "prod_camera", "quantity": 1},
                        {"product_id": "prod_strap", "quantity": 2},
                    ]
                }
            ]
        }
    }


class OrderLineResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: str
    seller_id: str
    name: str
    unit_price_cents: int
    quantity: int
    line_total_cents: int


class PayoutResponse(BaseModel):
    """A seller's share of an order and its transfer state."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_id: UUID
    seller_id: str
    gross_cents: int
    platform_fee_cents: int
    processor_fee_cents: int
    tax_cents: int
    seller_earnings_cents: int
    status: str
    stripe_transfer_id: Optional[str] = None
    transfer_date: Optional[datetime] = None
    failure_reason: Optional[str] = None
    transfer_attempts: int
    created_at: datetime
    updated_at: datetime


class OrderResponse(BaseModel):
    """Order with lines, hold/release fields and payouts."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_number: str
    buyer_id: str
    currency: str
    subtotal_cents: int
    tax_cents: int
    platform_fee_cents: int
    total_cents: int
    tax_rate_bps: int
    platform_fee_rate_bps: int
    processor_fee_rate_bps: int
    stripe_payment_intent_id: Optional[str] = None
    payment_status: str
    status: str
    settlement_state: str
    paid_at: Optional[datetime] = None
    hold_days: int
    release_at: Optional[datetime] = None
    held: bool
    released: bool
    released_at: Optional[datetime] = None
    created_at: datetime
    lines: List[OrderLineResponse]
    payouts: List[PayoutResponse]


class BreakdownResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    subtotal_cents: int
    tax_cents: int
    platform_fee_cents: int
    total_cents: int


class CreateOrderResponse(BaseModel):
    """Response schema for order creation."""

    order: OrderResponse
    client_secret: Optional[str] = Field(
        default=None, description="PaymentIntent client secret for the buyer's browser"
    )
    breakdown: BreakdownResponse


class ConfirmPaymentRequest(BaseModel):
    payment_intent_id: str = Field(..., min_length=1, description="Stripe PaymentIntent ID")


class PaginationResponse(BaseModel):
    page: int
    page_size: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


class OrderListResponse(BaseModel):
    orders: List[OrderResponse]
    pagination: PaginationResponse


class EarningsSummaryResponse(BaseModel):
    """Seller earnings over all payouts."""

    total_earnings_cents: int = Field(..., description="Earnings of completed payouts")
    pending_earnings_cents: int = Field(..., description="Earnings of pending payouts")
    total_sales_cents: int
    total_fees_cents: int = Field(..., description="Platform fee, processor fee and tax")
    total_payouts: int
    completed_payouts: int
    pending_payouts: int
    processing_payouts: int
    failed_payouts: int
    monthly_earnings_cents: Dict[str, int] = Field(
        ..., description="Completed earnings keyed YYYY-MM by transfer date"
    )


class PayoutListResponse(BaseModel):
    payouts: List[PayoutResponse]
    summary: EarningsSummaryResponse
    pagination: PaginationResponse


class ReleaseScheduleRequest(BaseModel):
    """Admin override of an order's release time."""

    release_at: Optional[datetime] = Field(default=None, description="Explicit release time")
    hold_days: Optional[int] = Field(default=None, description="Hold period in days (1-30)")


class ReleaseResponse(BaseModel):
    """Outcome of releasing one order."""

    order_id: str
    released_at: Optional[str] = None
    completed: List[str]
    failed: List[str]
    blocked: List[str]
    skipped: List[str]


class ReleaseSweepResponse(BaseModel):
    orders_released: int
    orders_failed: int
    total_orders: int


class RetryPayoutResponse(BaseModel):
    payout: PayoutResponse
    outcome: str = Field(..., description="completed, failed, blocked or skipped")


class PayoutScheduleRequest(BaseModel):
    """Seller payout schedule."""

    schedule_type: str = Field(..., description="daily, weekly, monthly or custom")
    payout_day: Optional[int] = Field(
        default=None, description="0-6 (Sunday first) for weekly, 1-31 for monthly"
    )
    payout_date: Optional[datetime] = Field(default=None, description="Date for custom schedules")

    @field_validator("schedule_type")
    @classmethod
    def normalize_schedule_type(cls, v: str) -> str:
        return v.lower()


class SellerAccountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    seller_id: str
    stripe_account_id: Optional[str] = None
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool
    payout_schedule_type: Optional[str] = None
    payout_day: Optional[int] = None
    payout_date: Optional[datetime] = None
    next_payout_date: Optional[datetime] = None


class OnboardingRequest(BaseModel):
    email: Optional[str] = Field(default=None, description="Prefilled on the connected account")


class OnboardingResponse(BaseModel):
    seller: SellerAccountResponse
    onboarding_url: str = Field(..., description="Hosted Stripe onboarding link")


class SellerSummaryResponse(BaseModel):
    account: SellerAccountResponse
    summary: EarningsSummaryResponse


class SellerListResponse(BaseModel):
    sellers: List[SellerSummaryResponse]
    pagination: PaginationResponse


class SellerDetailResponse(SellerSummaryResponse):
    product_count: int
    active_product_count: int


class ReconciliationResponse(BaseModel):
    checked: int
    completed: int
    failed: int
    errors: int


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="success, ignored or duplicate")
    event_id: str = Field(..., description="Stripe event ID")
    result: Optional[Dict[str, Any]] = None


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
