"""
Stripe webhook handler with signature verification and event deduplication.

Implements:
- Webhook signature verification
- Decoding of verified events into settlement events
- Fast-path duplicate filtering using Redis
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional, Union

import redis.asyncio as aioredis
import stripe
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.config import get_settings
from settlement.monitoring.metrics import metrics

if TYPE_CHECKING:
    from settlement.core.settlement import SettlementService

logger = structlog.get_logger(__name__)


class WebhookError(Exception):
    """Raised when a webhook cannot be verified or processed."""

    pass


@dataclass(frozen=True)
class PaymentSucceeded:
    event_id: str
    payment_intent_id: str


@dataclass(frozen=True)
class PaymentFailed:
    event_id: str
    payment_intent_id: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class Unhandled:
    event_id: str
    event_type: str


ProcessorEvent = Union[PaymentSucceeded, PaymentFailed, Unhandled]


def decode_event(event: Any) -> ProcessorEvent:
    """
    Decode a verified Stripe event into a settlement event.

    Accepts a stripe.Event or the equivalent plain dict. Payment events
    whose object carries no id cannot be matched to an order and decode
    as Unhandled.
    """
    event_id = event["id"]
    event_type = event["type"]
    obj = (event.get("data") or {}).get("object") or {}

    if event_type not in ("payment_intent.succeeded", "payment_intent.payment_failed"):
        return Unhandled(event_id=event_id, event_type=event_type)

    payment_intent_id = obj.get("id")
    if not payment_intent_id:
        logger.warning("webhook_event_without_object_id", event_id=event_id, event_type=event_type)
        return Unhandled(event_id=event_id, event_type=event_type)

    if event_type == "payment_intent.succeeded":
        return PaymentSucceeded(event_id=event_id, payment_intent_id=payment_intent_id)

    last_error = obj.get("last_payment_error") or {}
    return PaymentFailed(
        event_id=event_id,
        payment_intent_id=payment_intent_id,
        reason=last_error.get("message"),
    )


class WebhookHandler:
    """
    Handles Stripe webhook events.

    Redis only remembers processed event ids to skip obvious redeliveries.
    It is fail-open: when Redis is unavailable events are processed anyway and
    the settlement transitions stay idempotent on their own.
    """

    def __init__(self, redis_client: Optional[aioredis.Redis] = None):
        """
        Initialize webhook handler.

        Args:
            redis_client: Optional Redis client for event deduplication
        """
        self.settings = get_settings()
        self.redis_client = redis_client
        self._owns_redis = False

    async def _ensure_redis(self) -> aioredis.Redis:
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            self._owns_redis = True
        return self.redis_client

    def verify_signature(
        self, payload: bytes, signature: Optional[str], secret: Optional[str] = None
    ) -> stripe.Event:
        """
        Verify webhook signature and construct event.

        Args:
            payload: Raw request body as bytes
            signature: Stripe-Signature header value
            secret: Optional webhook secret (uses config if not provided)

        Returns:
            stripe.Event: Verified Stripe event

        Raises:
            WebhookError: If signature verification fails
        """
        if not signature:
            logger.warning("webhook_signature_missing")
            raise WebhookError("Missing Stripe-Signature header")

        webhook_secret = secret or self.settings.stripe_webhook_secret

        try:
            event = stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=webhook_secret,
            )
        except stripe.error.SignatureVerificationError as e:
            logger.warning("webhook_signature_verification_failed", error=str(e))
            raise WebhookError(f"Invalid webhook signature: {e}") from e
        except ValueError as e:
            logger.warning("webhook_payload_invalid", error=str(e))
            raise WebhookError(f"Invalid webhook payload: {e}") from e

        logger.info(
            "webhook_signature_verified",
            event_id=event["id"],
            event_type=event["type"],
        )
        return event

    @staticmethod
    def _dedup_key(event_id: str) -> str:
        return f"webhook:processed:{event_id}"

    async def is_event_processed(self, event_id: str) -> bool:
        """Check the duplicate filter; False when Redis is unavailable."""
        try:
            redis = await self._ensure_redis()
            return bool(await redis.exists(self._dedup_key(event_id)))
        except Exception as e:
            logger.warning("webhook_dedup_check_error", error=str(e), event_id=event_id)
            return False

    async def mark_event_processed(self, event_id: str) -> None:
        """Remember a processed event id for the configured TTL."""
        try:
            redis = await self._ensure_redis()
            await redis.setex(
                self._dedup_key(event_id), self.settings.webhook_dedup_ttl_seconds, "1"
            )
        except Exception as e:
            logger.warning("webhook_mark_processed_error", error=str(e), event_id=event_id)

    async def process_event(
        self,
        event: Any,
        settlement: SettlementService,
        db: AsyncSession,
    ) -> Dict[str, Any]:
        """
        Decode a verified event and apply it to the settlement state machine.

        Args:
            event: Verified Stripe event
            settlement: State machine applying the transition
            db: Database session

        Returns:
            Dict[str, Any]: Processing result
        """
        started = time.monotonic()
        decoded = decode_event(event)
        event_type = event["type"]

        if await self.is_event_processed(decoded.event_id):
            logger.info(
                "webhook_event_already_processed",
                event_id=decoded.event_id,
                event_type=event_type,
            )
            metrics.record_webhook_event(event_type, "duplicate", time.monotonic() - started)
            return {"status": "duplicate", "event_id": decoded.event_id}

        try:
            result = await settlement.handle_event(decoded, db)
        except Exception:
            metrics.record_webhook_event(event_type, "failed", time.monotonic() - started)
            logger.exception(
                "webhook_event_processing_failed",
                event_id=decoded.event_id,
                event_type=event_type,
            )
            raise

        await self.mark_event_processed(decoded.event_id)

        status = "ignored" if isinstance(decoded, Unhandled) else "success"
        metrics.record_webhook_event(event_type, status, time.monotonic() - started)
        logger.info(
            "webhook_event_processed",
            event_id=decoded.event_id,
            event_type=event_type,
            status=status,
        )

        return {"status": status, "event_id": decoded.event_id, "result": result}

    async def close(self) -> None:
        """Close Redis connection if this handler opened it."""
        if self.redis_client is not None and self._owns_redis:
            await self.redis_client.aclose()
            self.redis_client = None
