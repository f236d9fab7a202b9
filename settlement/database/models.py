"""SQLAlchemy database models for the settlement engine."""
import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime column.

    Values are normalised to UTC on write and come back aware on read, also on
    backends (SQLite) that drop the offset.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Naive datetimes are not accepted; use UTC-aware values")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Product(Base):
    """
    Catalog read model.

    Owned by the catalog collaborator; the settlement engine only reads it
    while pricing a new order.
    """

    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Product(id={self.id}, seller_id={self.seller_id}, price={self.price_cents})>"


class SellerAccount(Base):
    """
    Seller payout destination and informational payout schedule.

    A seller can receive transfers only once the processor reports
    payouts as enabled on the connected account.
    """

    __tablename__ = "seller_accounts"

    seller_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    stripe_account_id: Mapped[Optional[str]] = mapped_column(
        String(255), unique=True, nullable=True
    )
    charges_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payouts_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    details_submitted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payout_schedule_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    payout_day: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    payout_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    next_payout_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "payout_schedule_type IS NULL OR "
            "payout_schedule_type IN ('daily', 'weekly', 'monthly', 'custom')",
            name="valid_payout_schedule_type",
        ),
    )

    @property
    def has_payout_destination(self) -> bool:
        """True when transfers to this seller can be attempted."""
        return bool(self.stripe_account_id) and self.payouts_enabled

    def __repr__(self) -> str:
        return (
            f"<SellerAccount(seller_id={self.seller_id}, "
            f"account={self.stripe_account_id}, payouts_enabled={self.payouts_enabled})>"
        )


class Order(Base):
    """
    Orders table.

    One checkout covering items from one or more sellers. Monetary values are
    minor units; the fee rates in effect at checkout are snapshotted so the
    split can be reproduced later.
    """

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    subtotal_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    tax_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    total_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    tax_rate_bps: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_fee_rate_bps: Mapped[int] = mapped_column(Integer, nullable=False)
    processor_fee_rate_bps: Mapped[int] = mapped_column(Integer, nullable=False)

    stripe_payment_intent_id: Mapped[Optional[str]] = mapped_column(
        String(255), unique=True, nullable=True
    )
    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending", index=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    paid_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    hold_days: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    release_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    held: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    released: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    released_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    lines: Mapped[List["OrderLine"]] = relationship(
        back_populates="order", lazy="selectin", order_by="OrderLine.id"
    )
    payouts: Mapped[List["Payout"]] = relationship(
        back_populates="order", lazy="selectin", order_by="Payout.created_at"
    )

    __table_args__ = (
        CheckConstraint("subtotal_cents >= 0", name="non_negative_subtotal"),
        CheckConstraint(
            "total_cents = subtotal_cents + tax_cents + platform_fee_cents",
            name="total_matches_breakdown",
        ),
        CheckConstraint(
            "payment_status IN ('pending', 'succeeded', 'failed', 'canceled')",
            name="valid_payment_status",
        ),
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'canceled')",
            name="valid_order_status",
        ),
        CheckConstraint("hold_days BETWEEN 1 AND 30", name="valid_hold_days"),
        CheckConstraint("NOT (released AND held)", name="released_not_held"),
        Index("idx_orders_release_due", "payment_status", "held", "released", "release_at"),
    )

    @property
    def settlement_state(self) -> str:
        """Position of the order in the settlement lifecycle."""
        if self.payment_status == "failed":
            return "payment_failed"
        if self.payment_status == "canceled":
            return "canceled"
        if self.released:
            return "released"
        if self.payment_status == "succeeded":
            return "held" if self.held else "paid"
        if self.stripe_payment_intent_id:
            return "awaiting_payment"
        return "created"

    @property
    def seller_ids(self) -> List[str]:
        """Distinct sellers in line order."""
        return list(dict.fromkeys(line.seller_id for line in self.lines))

    def __repr__(self) -> str:
        return (
            f"<Order(id={self.id}, number={self.order_number}, "
            f"total={self.total_cents}, payment_status={self.payment_status})>"
        )


class OrderLine(Base):
    """
    Immutable purchase snapshot.

    Price and seller are copied from the catalog at checkout time.
    """

    __tablename__ = "order_lines"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    order: Mapped[Order] = relationship(back_populates="lines")

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="positive_quantity"),
        CheckConstraint("unit_price_cents > 0", name="positive_unit_price"),
    )

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity

    def __repr__(self) -> str:
        return (
            f"<OrderLine(order_id={self.order_id}, product_id={self.product_id}, "
            f"qty={self.quantity})>"
        )


class Payout(Base):
    """
    Payout ledger table.

    One entry per (order, seller). Tracks the seller's share of the order and
    the state of the transfer to the seller's connected account.
    """

    __tablename__ = "payouts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    gross_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    processor_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    tax_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    seller_earnings_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    stripe_transfer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    transfer_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    transfer_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    order: Mapped[Order] = relationship(back_populates="payouts")

    __table_args__ = (
        UniqueConstraint("order_id", "seller_id", name="uq_payout_order_seller"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="valid_payout_status",
        ),
        CheckConstraint(
            "seller_earnings_cents = gross_cents - platform_fee_cents "
            "- processor_fee_cents - tax_cents",
            name="earnings_match_breakdown",
        ),
        Index("idx_payouts_seller_created", "seller_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Payout(id={self.id}, order_id={self.order_id}, seller_id={self.seller_id}, "
            f"earnings={self.seller_earnings_cents}, status={self.status})>"
        )
