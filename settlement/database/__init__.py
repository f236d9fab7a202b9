"""Database package for the settlement engine."""
from .connection import close_db, get_db, get_session_factory, init_db
from .models import (
    Base,
    Order,
    OrderLine,
    Payout,
    Product,
    SellerAccount,
    utcnow,
)

__all__ = [
    "Base",
    "Order",
    "OrderLine",
    "Payout",
    "Product",
    "SellerAccount",
    "utcnow",
    "close_db",
    "get_db",
    "get_session_factory",
    "init_db",
]
