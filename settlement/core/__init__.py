"""Core settlement logic."""
from .fees import FeeRates, compute_order_breakdown, compute_payout_split
from .locking import OrderLocks, order_locks
from .orders import CartItem, CheckoutResult, OrderService
from .payout_schedule import PayoutSchedule, calculate_next_payout_date
from .payouts import PayoutLedger
from .reconciliation import PayoutReconciler
from .sellers import SellerAccountService
from .settlement import ReleaseResult, SettlementService

__all__ = [
    "CartItem",
    "CheckoutResult",
    "FeeRates",
    "OrderLocks",
    "OrderService",
    "PayoutLedger",
    "PayoutReconciler",
    "PayoutSchedule",
    "ReleaseResult",
    "SellerAccountService",
    "SettlementService",
    "calculate_next_payout_date",
    "compute_order_breakdown",
    "compute_payout_split",
    "order_locks",
]
