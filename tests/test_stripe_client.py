"""
Unit tests for the Stripe client wrapper and its circuit breaker.
"""
from unittest.mock import MagicMock, patch

import pytest
import stripe

from settlement.integrations.stripe_client import (
    CircuitBreaker,
    StripeClient,
    StripeError,
    StripeErrorType,
    TransferRejected,
)


class TestCircuitBreaker:
    """Test suite for CircuitBreaker."""

    @pytest.mark.unit
    def test_opens_after_threshold(self) -> None:
        breaker = CircuitBreaker(failure_threshold=3, timeout=60)

        for _ in range(3):
            breaker.on_failure()

        assert breaker.state == "open"
        with pytest.raises(StripeError) as exc_info:
            breaker.before_call()
        assert exc_info.value.error_type == StripeErrorType.TRANSIENT

    @pytest.mark.unit
    def test_half_open_then_closed(self) -> None:
        breaker = CircuitBreaker(failure_threshold=1, timeout=0, success_threshold=2)
        breaker.on_failure()
        breaker.last_failure_time -= 1

        breaker.before_call()
        assert breaker.state == "half_open"

        breaker.on_success()
        assert breaker.state == "half_open"
        breaker.on_success()
        assert breaker.state == "closed"

    @pytest.mark.unit
    def test_success_resets_failures(self) -> None:
        breaker = CircuitBreaker(failure_threshold=3)
        breaker.on_failure()
        breaker.on_failure()

        breaker.on_success()
        breaker.on_failure()

        assert breaker.state == "closed"


class TestErrorClassification:
    """Test suite for error classification."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "error,expected",
        [
            (stripe.error.RateLimitError("slow down"), StripeErrorType.RATE_LIMIT),
            (stripe.error.APIConnectionError("reset"), StripeErrorType.TRANSIENT),
            (stripe.error.APIError("internal"), StripeErrorType.TRANSIENT),
            (stripe.error.InvalidRequestError("No such destination", "destination"), StripeErrorType.PERMANENT),
            (stripe.error.AuthenticationError("bad key"), StripeErrorType.PERMANENT),
        ],
    )
    def test_classify(self, error: stripe.error.StripeError, expected: StripeErrorType) -> None:
        assert StripeClient._classify_error(error) == expected

    @pytest.mark.unit
    def test_processor_answered(self) -> None:
        answered = StripeError(
            "rejected",
            StripeErrorType.PERMANENT,
            stripe.error.InvalidRequestError("No such destination", "destination"),
        )
        unreachable = StripeError(
            "reset", StripeErrorType.TRANSIENT, stripe.error.APIConnectionError("reset")
        )
        local = StripeError("Circuit breaker is open", StripeErrorType.TRANSIENT)

        assert answered.processor_answered is True
        assert unreachable.processor_answered is False
        assert local.processor_answered is False


class TestTransfer:
    """Test suite for StripeClient.transfer and list_transfers."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transfer_passes_idempotency_key(self) -> None:
        client = StripeClient()

        with patch("stripe.Transfer.create", return_value=MagicMock(id="tr_1")) as create:
            transfer_id = await client.transfer(
                amount_cents=8660,
                currency="USD",
                destination="acct_seller_a",
                idempotency_key="payout-1-0",
                transfer_group="ORD-1",
                metadata={"payout_id": "1"},
            )

        assert transfer_id == "tr_1"
        create.assert_called_once_with(
            amount=8660,
            currency="usd",
            destination="acct_seller_a",
            metadata={"payout_id": "1"},
            idempotency_key="payout-1-0",
            transfer_group="ORD-1",
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_permanent_error_is_rejection(self) -> None:
        client = StripeClient()
        error = stripe.error.InvalidRequestError("No such destination", "destination")

        with patch("stripe.Transfer.create", side_effect=error) as create:
            with pytest.raises(TransferRejected) as exc_info:
                await client.transfer(
                    amount_cents=100,
                    currency="usd",
                    destination="acct_gone",
                    idempotency_key="payout-2-0",
                )

        assert create.call_count == 1
        assert exc_info.value.processor_answered is True
        assert client.circuit_breaker.failure_count == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_transfers_follows_pages(self) -> None:
        client = StripeClient()

        def item(transfer_id: str) -> MagicMock:
            return MagicMock(
                id=transfer_id, amount=500, destination="acct_seller_a", metadata={"payout_id": transfer_id}
            )

        pages = [
            MagicMock(data=[item("tr_1"), item("tr_2")], has_more=True),
            MagicMock(data=[item("tr_3")], has_more=False),
        ]

        with patch("stripe.Transfer.list", side_effect=pages) as list_call:
            records = await client.list_transfers("ORD-1", limit=2)

        assert [r.id for r in records] == ["tr_1", "tr_2", "tr_3"]
        assert list_call.call_args_list[1].kwargs["starting_after"] == "tr_2"
        assert "starting_after" not in list_call.call_args_list[0].kwargs


class TestConnectedAccounts:
    """Test suite for connected account onboarding calls."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_connected_account_is_idempotent_per_seller(self) -> None:
        client = StripeClient()

        with patch("stripe.Account.create", return_value=MagicMock(id="acct_new")) as create:
            account_id = await client.create_connected_account(
                "seller_c", country="US", email="c@example.com"
            )

        assert account_id == "acct_new"
        create.assert_called_once_with(
            type="express",
            country="US",
            business_type="individual",
            metadata={"seller_id": "seller_c"},
            idempotency_key="connect-account-seller_c",
            email="c@example.com",
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_connected_account_without_email(self) -> None:
        client = StripeClient()

        with patch("stripe.Account.create", return_value=MagicMock(id="acct_new")) as create:
            await client.create_connected_account("seller_c", country="US")

        assert "email" not in create.call_args.kwargs

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_account_link_returns_url(self) -> None:
        client = StripeClient()
        link = MagicMock(url="https://connect.stripe.com/setup/e/acct_new/abc")

        with patch("stripe.AccountLink.create", return_value=link) as create:
            url = await client.create_account_link(
                "acct_new",
                refresh_url="http://localhost:3000/connect/refresh?account_id=acct_new",
                return_url="http://localhost:3000/connect/success?account_id=acct_new",
            )

        assert url == link.url
        assert create.call_args.kwargs["type"] == "account_onboarding"
        assert create.call_args.kwargs["account"] == "acct_new"
