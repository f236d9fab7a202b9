"""
Fee model.

Pure functions splitting a gross amount into tax, platform fee, processor fee
and seller earnings. Amounts are integer minor units and rates are basis
points, so every split is exact and reproducible from the rates stored on an
order. Each component is rounded half-up to the minor unit on its own.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from settlement.config import Settings
    from settlement.database.models import Order

BPS_DENOMINATOR = Decimal("10000")


@dataclass(frozen=True)
class FeeRates:
    """Rates in basis points (725 = 7.25%)."""

    tax_rate_bps: int
    platform_fee_rate_bps: int
    processor_fee_rate_bps: int

    def __post_init__(self) -> None:
        for name in ("tax_rate_bps", "platform_fee_rate_bps", "processor_fee_rate_bps"):
            value = getattr(self, name)
            if not 0 <= value <= 10000:
                raise ValueError(f"{name} must be between 0 and 10000, got {value}")

    @classmethod
    def from_settings(cls, settings: Settings) -> FeeRates:
        return cls(
            tax_rate_bps=settings.tax_rate_bps,
            platform_fee_rate_bps=settings.platform_fee_rate_bps,
            processor_fee_rate_bps=settings.processor_fee_rate_bps,
        )

    @classmethod
    def from_order(cls, order: Order) -> FeeRates:
        """Rates snapshotted on an order at checkout."""
        return cls(
            tax_rate_bps=order.tax_rate_bps,
            platform_fee_rate_bps=order.platform_fee_rate_bps,
            processor_fee_rate_bps=order.processor_fee_rate_bps,
        )


@dataclass(frozen=True)
class OrderBreakdown:
    """Buyer-facing amounts for an order."""

    subtotal_cents: int
    tax_cents: int
    platform_fee_cents: int
    total_cents: int


@dataclass(frozen=True)
class PayoutSplit:
    """One seller's share of an order."""

    gross_cents: int
    tax_cents: int
    platform_fee_cents: int
    processor_fee_cents: int
    seller_earnings_cents: int


def apply_basis_points(amount_cents: int, bps: int) -> int:
    """
    Apply a basis-point rate to an amount, rounding half-up to a minor unit.

    Example: apply_basis_points(20000, 725) == 1450
    """
    if amount_cents < 0:
        raise ValueError("Amount must not be negative")
    portion = Decimal(amount_cents) * Decimal(bps) / BPS_DENOMINATOR
    return int(portion.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_order_breakdown(subtotal_cents: int, rates: FeeRates) -> OrderBreakdown:
    """
    Buyer-facing breakdown: tax and platform fee are added on top.

    The processor fee is never charged to the buyer.
    """
    tax = apply_basis_points(subtotal_cents, rates.tax_rate_bps)
    platform_fee = apply_basis_points(subtotal_cents, rates.platform_fee_rate_bps)
    return OrderBreakdown(
        subtotal_cents=subtotal_cents,
        tax_cents=tax,
        platform_fee_cents=platform_fee,
        total_cents=subtotal_cents + tax + platform_fee,
    )


def compute_payout_split(gross_cents: int, rates: FeeRates) -> PayoutSplit:
    """Seller share: earnings are gross minus every fee and tax."""
    tax = apply_basis_points(gross_cents, rates.tax_rate_bps)
    platform_fee = apply_basis_points(gross_cents, rates.platform_fee_rate_bps)
    processor_fee = apply_basis_points(gross_cents, rates.processor_fee_rate_bps)
    return PayoutSplit(
        gross_cents=gross_cents,
        tax_cents=tax,
        platform_fee_cents=platform_fee,
        processor_fee_cents=processor_fee,
        seller_earnings_cents=gross_cents - tax - platform_fee - processor_fee,
    )


def format_rate(bps: int) -> str:
    """Human readable percentage, e.g. 725 -> '7.25%'."""
    percent = (Decimal(bps) / Decimal("100")).normalize()
    return f"{percent:f}%"
