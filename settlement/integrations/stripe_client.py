"""
Stripe API client with retry logic and comprehensive error handling.

This is the boundary to the payment processor: payment intents and their
status, transfers to connected accounts, and connected account onboarding
and status.

Implements:
- Exponential backoff for transient errors
- Circuit breaker pattern
- Idempotent intent and transfer creation
"""
import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TypeVar

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from settlement.config import get_settings
from settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class StripeError(Exception):
    """Base exception for Stripe-related errors."""

    def __init__(
        self,
        message: str,
        error_type: StripeErrorType,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize Stripe error.

        Args:
            message: Error message
            error_type: Classification of error
            original_error: Original Stripe exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error

    @property
    def processor_answered(self) -> bool:
        """True when Stripe returned a response, so the request outcome is known."""
        return self.original_error is not None and not isinstance(
            self.original_error, stripe.error.APIConnectionError
        )


class TransferRejected(StripeError):
    """The destination account cannot receive the transfer."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message, StripeErrorType.PERMANENT, original_error)


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, StripeError) and error.error_type != StripeErrorType.PERMANENT


@dataclass(frozen=True)
class PaymentHandle:
    """Client-facing reference to a payment intent."""

    id: str
    client_secret: Optional[str]
    status: str


@dataclass(frozen=True)
class AccountStatus:
    """Capability flags of a connected account."""

    account_id: str
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool


@dataclass(frozen=True)
class TransferRecord:
    """A transfer as reported by the processor."""

    id: str
    amount_cents: int
    destination: Optional[str]
    metadata: Dict[str, Any]


class CircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def before_call(self) -> None:
        """
        Reject the call while the circuit is open.

        Raises:
            StripeError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self.state = "half_open"
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise StripeError(
                    "Circuit breaker is open",
                    StripeErrorType.TRANSIENT,
                )

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = "closed"
                metrics.set_circuit_breaker_state(self.state)
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self.state = "open"
            metrics.set_circuit_breaker_state(self.state)
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


class StripeClient:
    """
    Wrapper for the Stripe API used by the settlement engine.

    Blocking SDK calls run in a worker thread so callers can bound them with
    asyncio timeouts.
    """

    def __init__(self) -> None:
        """Initialize Stripe client."""
        settings = get_settings()
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.settings = settings
        self.circuit_breaker = CircuitBreaker()

        logger.info(
            "stripe_client_initialized",
            api_version=stripe.api_version,
            test_mode=settings.is_test_mode,
        )

    @staticmethod
    def _classify_error(error: stripe.error.StripeError) -> StripeErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            StripeErrorType: Error classification
        """
        if isinstance(error, stripe.error.RateLimitError):
            return StripeErrorType.RATE_LIMIT
        elif isinstance(
            error,
            (
                stripe.error.APIConnectionError,
                stripe.error.APIError,
            ),
        ):
            return StripeErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.error.CardError,
                stripe.error.InvalidRequestError,
                stripe.error.PermissionError,
                stripe.error.AuthenticationError,
            ),
        ):
            return StripeErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return StripeErrorType.TRANSIENT

    def _to_error(self, operation: str, error: stripe.error.StripeError) -> StripeError:
        error_type = self._classify_error(error)
        metrics.record_stripe_error(operation, error_type.value)

        logger.error(
            "stripe_api_error",
            operation=operation,
            error_type=error_type.value,
            error_code=getattr(error, "code", None),
            error_message=str(error),
        )

        return StripeError(
            message=getattr(error, "user_message", None) or str(error),
            error_type=error_type,
            original_error=error,
        )

    async def _call(self, operation: str, func: Callable[[], T]) -> T:
        """Run a blocking SDK call behind the circuit breaker."""
        self.circuit_breaker.before_call()
        try:
            result = await asyncio.to_thread(func)
        except stripe.error.StripeError as e:
            converted = self._to_error(operation, e)
            if converted.error_type != StripeErrorType.PERMANENT:
                self.circuit_breaker.on_failure()
            raise converted from e
        self.circuit_breaker.on_success()
        return result

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=1, max=16),
        reraise=True,
    )
    async def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PaymentHandle:
        """
        Create a Stripe PaymentIntent with idempotency.

        Args:
            amount_cents: Amount in cents
            currency: Currency code (e.g., 'usd')
            idempotency_key: Idempotency key for preventing duplicates
            metadata: Optional metadata

        Returns:
            PaymentHandle: Created payment intent reference

        Raises:
            StripeError: If payment creation fails
        """
        logger.info(
            "creating_payment_intent",
            amount_cents=amount_cents,
            currency=currency,
            idempotency_key=idempotency_key,
        )

        def _create() -> stripe.PaymentIntent:
            return stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency.lower(),
                idempotency_key=idempotency_key,
                metadata=metadata or {},
                automatic_payment_methods={"enabled": True},
            )

        payment_intent = await self._call("create_payment_intent", _create)

        logger.info(
            "payment_intent_created",
            payment_intent_id=payment_intent.id,
            status=payment_intent.status,
        )

        return PaymentHandle(
            id=payment_intent.id,
            client_secret=payment_intent.client_secret,
            status=payment_intent.status,
        )

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def retrieve_payment_status(self, payment_intent_id: str) -> str:
        """
        Retrieve the current status of a PaymentIntent.

        Args:
            payment_intent_id: Stripe PaymentIntent ID

        Returns:
            str: Stripe status (succeeded, processing, requires_payment_method, ...)
        """
        logger.info("retrieving_payment_intent", payment_intent_id=payment_intent_id)

        def _retrieve() -> stripe.PaymentIntent:
            return stripe.PaymentIntent.retrieve(payment_intent_id)

        payment_intent = await self._call("retrieve_payment_intent", _retrieve)
        return payment_intent.status

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def transfer(
        self,
        amount_cents: int,
        currency: str,
        destination: str,
        idempotency_key: str,
        transfer_group: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Transfer funds from the platform balance to a connected account.

        Retries reuse the idempotency key, so a transient failure never
        produces a second transfer.

        Returns:
            str: Stripe transfer ID

        Raises:
            TransferRejected: If the destination cannot receive funds
            StripeError: On any other processor failure
        """
        logger.info(
            "creating_transfer",
            amount_cents=amount_cents,
            destination=destination,
            idempotency_key=idempotency_key,
        )

        def _create_transfer() -> stripe.Transfer:
            kwargs: Dict[str, Any] = {
                "amount": amount_cents,
                "currency": currency.lower(),
                "destination": destination,
                "metadata": metadata or {},
                "idempotency_key": idempotency_key,
            }
            if transfer_group:
                kwargs["transfer_group"] = transfer_group
            return stripe.Transfer.create(**kwargs)

        try:
            transfer = await self._call("create_transfer", _create_transfer)
        except StripeError as e:
            if e.error_type == StripeErrorType.PERMANENT:
                raise TransferRejected(str(e), e.original_error) from e
            raise

        logger.info("transfer_created", transfer_id=transfer.id, destination=destination)
        return transfer.id

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def retrieve_account_status(self, account_id: str) -> AccountStatus:
        """
        Retrieve capability flags of a connected account.

        Args:
            account_id: Stripe connected account ID (acct_...)

        Returns:
            AccountStatus: Charges/payouts/details flags
        """
        logger.info("retrieving_account", account_id=account_id)

        def _retrieve() -> stripe.Account:
            return stripe.Account.retrieve(account_id)

        account = await self._call("retrieve_account", _retrieve)
        return AccountStatus(
            account_id=account.id,
            charges_enabled=bool(account.charges_enabled),
            payouts_enabled=bool(account.payouts_enabled),
            details_submitted=bool(account.details_submitted),
        )

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def create_connected_account(
        self,
        seller_id: str,
        country: str,
        email: Optional[str] = None,
    ) -> str:
        """
        Create an Express connected account for a seller.

        The idempotency key is derived from the seller, so concurrent
        onboarding requests resolve to the same account.

        Returns:
            str: Connected account ID (acct_...)
        """
        logger.info("creating_connected_account", seller_id=seller_id, country=country)

        def _create() -> stripe.Account:
            kwargs: Dict[str, Any] = {
                "type": "express",
                "country": country,
                "business_type": "individual",
                "metadata": {"seller_id": seller_id},
                "idempotency_key": f"connect-account-{seller_id}",
            }
            if email:
                kwargs["email"] = email
            return stripe.Account.create(**kwargs)

        account = await self._call("create_account", _create)
        logger.info("connected_account_created", seller_id=seller_id, account_id=account.id)
        return account.id

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def create_account_link(self, account_id: str, refresh_url: str, return_url: str) -> str:
        """Create a hosted onboarding link; returns its URL."""
        logger.info("creating_account_link", account_id=account_id)

        def _create() -> stripe.AccountLink:
            return stripe.AccountLink.create(
                account=account_id,
                refresh_url=refresh_url,
                return_url=return_url,
                type="account_onboarding",
            )

        link = await self._call("create_account_link", _create)
        return link.url

    async def list_transfers(self, transfer_group: str, limit: int = 100) -> List[TransferRecord]:
        """
        List transfers for a transfer group, following pagination.

        Args:
            transfer_group: Group set when the transfers were created
            limit: Page size

        Returns:
            List[TransferRecord]: Transfers in the group
        """
        logger.info("listing_transfers", transfer_group=transfer_group)

        records: List[TransferRecord] = []
        starting_after: Optional[str] = None

        while True:

            def _list(cursor: Optional[str] = starting_after) -> stripe.ListObject:
                kwargs: Dict[str, Any] = {"limit": limit, "transfer_group": transfer_group}
                if cursor:
                    kwargs["starting_after"] = cursor
                return stripe.Transfer.list(**kwargs)

            page = await self._call("list_transfers", _list)
            for item in page.data:
                records.append(
                    TransferRecord(
                        id=item.id,
                        amount_cents=item.amount,
                        destination=item.destination,
                        metadata=dict(item.metadata or {}),
                    )
                )

            if not page.has_more or not page.data:
                break
            starting_after = page.data[-1].id

        return records
