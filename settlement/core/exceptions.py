"""
Settlement exception hierarchy.

Validation errors reject bad input before anything is written, conflict
errors reject an operation the current state does not allow, and not-found
errors cover lookups. Failures of the payment processor during a release are
recorded on the affected payout instead of being raised.
"""


class SettlementError(Exception):
    """Base exception for settlement errors."""

    pass


class SettlementValidationError(SettlementError):
    """Raised when input validation fails. No state is mutated."""

    pass


class SettlementConflictError(SettlementError):
    """Raised when the current state forbids the requested transition."""

    pass


class SettlementNotFoundError(SettlementError):
    """Raised when a referenced entity does not exist or is not visible."""

    pass


class EmptyCart(SettlementValidationError):
    """No items were supplied for an order."""

    pass


class InvalidItems(SettlementValidationError):
    """One or more items reference unknown, inactive or unpriced products."""

    def __init__(self, message: str, product_ids: list[str] | None = None):
        super().__init__(message)
        self.product_ids = product_ids or []


class InvalidHoldDays(SettlementValidationError):
    """Hold period outside the supported range."""

    pass


class InvalidPayoutSchedule(SettlementValidationError):
    """Malformed seller payout schedule."""

    pass


class AlreadyReleased(SettlementConflictError):
    """The order's held funds were already released."""

    pass


class PaymentNotSucceeded(SettlementConflictError):
    """The order's payment has not succeeded."""

    pass


class OrderNumberCollision(SettlementConflictError):
    """No unique order number could be allocated."""

    pass


class PayoutNotRetryable(SettlementConflictError):
    """The payout is not in a state that allows a manual retry."""

    pass


class OrderNotFound(SettlementNotFoundError):
    pass


class PayoutNotFound(SettlementNotFoundError):
    pass


class SellerNotFound(SettlementNotFoundError):
    pass


class PaymentProcessorError(SettlementError):
    """The payment processor could not complete a call needed by the operation."""

    pass
