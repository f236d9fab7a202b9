"""External integrations for payment processing."""
from .stripe_client import (
    AccountStatus,
    PaymentHandle,
    StripeClient,
    StripeError,
    StripeErrorType,
    TransferRecord,
    TransferRejected,
)
from .webhook_handler import (
    PaymentFailed,
    PaymentSucceeded,
    ProcessorEvent,
    Unhandled,
    WebhookError,
    WebhookHandler,
    decode_event,
)

__all__ = [
    "AccountStatus",
    "PaymentFailed",
    "PaymentHandle",
    "PaymentSucceeded",
    "ProcessorEvent",
    "StripeClient",
    "StripeError",
    "StripeErrorType",
    "TransferRecord",
    "TransferRejected",
    "Unhandled",
    "WebhookError",
    "WebhookHandler",
    "decode_event",
]
