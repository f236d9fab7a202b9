"""
Unit tests for the fee model.
"""
import pytest

from settlement.core.fees import (
    FeeRates,
    apply_basis_points,
    compute_order_breakdown,
    compute_payout_split,
    format_rate,
)

DEFAULT_RATES = FeeRates(tax_rate_bps=725, platform_fee_rate_bps=325, processor_fee_rate_bps=290)


class TestApplyBasisPoints:
    """Rounding of basis-point rates to minor units."""

    @pytest.mark.unit
    def test_exact_amount(self) -> None:
        assert apply_basis_points(20000, 725) == 1450

    @pytest.mark.unit
    def test_rounds_half_up(self) -> None:
        # 150 * 3.25% = 4.875 -> 5, 10 * 7.25% = 0.725 -> 1, 2 * 2.5% = 0.05 -> 0
        assert apply_basis_points(150, 325) == 5
        assert apply_basis_points(10, 725) == 1
        assert apply_basis_points(2, 250) == 0
        assert apply_basis_points(20, 250) == 1

    @pytest.mark.unit
    def test_zero_amount_and_zero_rate(self) -> None:
        assert apply_basis_points(0, 725) == 0
        assert apply_basis_points(12345, 0) == 0

    @pytest.mark.unit
    def test_negative_amount_rejected(self) -> None:
        with pytest.raises(ValueError, match="must not be negative"):
            apply_basis_points(-1, 725)


class TestFeeRates:
    """Validation and sources of fee rates."""

    @pytest.mark.unit
    def test_rate_out_of_range(self) -> None:
        with pytest.raises(ValueError, match="tax_rate_bps"):
            FeeRates(tax_rate_bps=10001, platform_fee_rate_bps=0, processor_fee_rate_bps=0)

    @pytest.mark.unit
    def test_from_settings(self, test_settings) -> None:
        assert FeeRates.from_settings(test_settings) == DEFAULT_RATES

    @pytest.mark.unit
    def test_format_rate(self) -> None:
        assert format_rate(725) == "7.25%"
        assert format_rate(300) == "3%"


class TestOrderBreakdown:
    """Buyer-facing amounts."""

    @pytest.mark.unit
    def test_two_hundred_dollar_order(self) -> None:
        breakdown = compute_order_breakdown(20000, DEFAULT_RATES)

        assert breakdown.subtotal_cents == 20000
        assert breakdown.tax_cents == 1450
        assert breakdown.platform_fee_cents == 650
        assert breakdown.total_cents == 22100

    @pytest.mark.unit
    def test_total_is_sum_of_components(self) -> None:
        for subtotal in (1, 99, 150, 1999, 123457):
            breakdown = compute_order_breakdown(subtotal, DEFAULT_RATES)
            assert breakdown.total_cents == (
                breakdown.subtotal_cents + breakdown.tax_cents + breakdown.platform_fee_cents
            )


class TestPayoutSplit:
    """Seller-facing split."""

    @pytest.mark.unit
    def test_hundred_dollar_share(self) -> None:
        split = compute_payout_split(10000, DEFAULT_RATES)

        assert split.tax_cents == 725
        assert split.platform_fee_cents == 325
        assert split.processor_fee_cents == 290
        assert split.seller_earnings_cents == 8660

    @pytest.mark.unit
    def test_earnings_never_off_by_rounding(self) -> None:
        for gross in (1, 7, 150, 3333, 99999):
            split = compute_payout_split(gross, DEFAULT_RATES)
            assert split.seller_earnings_cents == (
                gross - split.tax_cents - split.platform_fee_cents - split.processor_fee_cents
            )

    @pytest.mark.unit
    def test_tiny_share_can_leave_nothing(self) -> None:
        rates = FeeRates(tax_rate_bps=5000, platform_fee_rate_bps=3000, processor_fee_rate_bps=2000)

        split = compute_payout_split(100, rates)

        assert split.seller_earnings_cents == 0
