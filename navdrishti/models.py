"""
SQLAlchemy ORM models: inventory ledger, orders, payments, shipping and the
supporting audit / notification / rate-limit tables.
"""
from __future__ import annotations

import enum
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _now() -> datetime:
    return datetime.now(timezone.utc)


def enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


def _enum(enum_cls: type[enum.Enum], name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        values_callable=enum_values,
        name=name,
        native_enum=False,
        length=32,
    )


JSONType = JSON().with_variant(JSONB(), "postgresql")
Money = Numeric(12, 2)


class Base(DeclarativeBase):
    pass


# ── Enumerations ─────────────────────────────────────────────────────────────

class ItemStatus(str, enum.Enum):
    ACTIVE = "active"
    SOLD = "sold"
    INACTIVE = "inactive"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PAYMENT_PENDING = "payment_pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus(str, enum.Enum):
    CREATED = "created"
    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"


# ── Inventory ledger ─────────────────────────────────────────────────────────

class InventoryItem(Base):
    __tablename__ = "marketplace_items"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    seller_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    title: Mapped[str] = mapped_column(Text, nullable=False, default="")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[ItemStatus] = mapped_column(
        _enum(ItemStatus, "item_status_enum"), nullable=False, default=ItemStatus.ACTIVE
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )

    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_item_quantity_non_negative"),
    )


# ── Orders ───────────────────────────────────────────────────────────────────

class Order(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    order_number: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    buyer_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    seller_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    status: Mapped[OrderStatus] = mapped_column(
        _enum(OrderStatus, "order_status_enum"), nullable=False, default=OrderStatus.PENDING
    )
    subtotal: Mapped[Decimal] = mapped_column(Money, nullable=False)
    shipping_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    tax_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(Text, nullable=False, default="INR")
    shipping_address: Mapped[dict] = mapped_column(JSONType, nullable=False)
    billing_address: Mapped[dict] = mapped_column(JSONType, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    # True while this order's line items are subtracted from the ledger
    inventory_committed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    needs_reconciliation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reconciliation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )

    items: Mapped[List["OrderItem"]] = relationship(
        back_populates="order", lazy="selectin", order_by="OrderItem.id"
    )

    __table_args__ = (
        CheckConstraint("buyer_id <> seller_id", name="ck_order_not_self_purchase"),
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    inventory_item_id: Mapped[int] = mapped_column(
        ForeignKey("marketplace_items.id", ondelete="RESTRICT"), nullable=False
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    total_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    item_snapshot: Mapped[dict] = mapped_column(JSONType, nullable=False)

    order: Mapped[Order] = relationship(back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_item_quantity_positive"),
    )


class OrderStatusHistory(Base):
    """Append-only: one row per order status change."""
    __tablename__ = "order_status_history"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    previous_status: Mapped[OrderStatus | None] = mapped_column(
        _enum(OrderStatus, "order_status_enum"), nullable=True
    )
    new_status: Mapped[OrderStatus] = mapped_column(
        _enum(OrderStatus, "order_status_enum"), nullable=False
    )
    changed_by: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )


# ── Payments ─────────────────────────────────────────────────────────────────

class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    gateway_order_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    # Natural key for the idempotent upsert; NULL until an attempt is seen
    gateway_payment_id: Mapped[str | None] = mapped_column(Text, nullable=True, unique=True)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(Text, nullable=False, default="INR")
    status: Mapped[PaymentStatus] = mapped_column(
        _enum(PaymentStatus, "payment_status_enum"), nullable=False, default=PaymentStatus.CREATED
    )
    method: Mapped[str | None] = mapped_column(Text, nullable=True)
    captured_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_amount: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    gateway_refund_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )

    # At most one payment per order ever holds the money
    __table_args__ = (
        Index(
            "uq_payments_one_capture_per_order",
            "order_id",
            unique=True,
            postgresql_where=text("status IN ('captured', 'refunded')"),
            sqlite_where=text("status IN ('captured', 'refunded')"),
        ),
    )


# ── Shipping ─────────────────────────────────────────────────────────────────

class ShippingDetail(Base):
    __tablename__ = "shipping_details"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False, unique=True
    )
    waybill: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    carrier: Mapped[str] = mapped_column(Text, nullable=False)
    carrier_order_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    service_type: Mapped[str] = mapped_column(Text, nullable=False, default="standard")
    tracking_status: Mapped[str] = mapped_column(Text, nullable=False, default="Manifest Generated")
    pickup_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expected_delivery: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_delivery: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    pickup_address: Mapped[dict] = mapped_column(JSONType, nullable=False)
    delivery_address: Mapped[dict] = mapped_column(JSONType, nullable=False)
    package_details: Mapped[dict] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )


class TrackingEvent(Base):
    """Append-only carrier scan."""
    __tablename__ = "tracking_events"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    shipping_id: Mapped[int] = mapped_column(
        ForeignKey("shipping_details.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    location: Mapped[str] = mapped_column(Text, nullable=False, default="")
    activity: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )

    __table_args__ = (
        UniqueConstraint(
            "shipping_id", "occurred_at", "status", "location",
            name="uq_tracking_event",
        ),
    )


# ── Notifications ────────────────────────────────────────────────────────────

class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    kind: Mapped[str] = mapped_column(Text, nullable=False, default="info")
    category: Mapped[str] = mapped_column(Text, nullable=False, default="order")
    action_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )


# ── Rate limiting ────────────────────────────────────────────────────────────

class RateLimitWindow(Base):
    """Fixed-window request counter shared by every process."""
    __tablename__ = "rate_limit_windows"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    bucket_key: Mapped[str] = mapped_column(Text, nullable=False)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("bucket_key", "window_start", name="uq_rate_limit_window"),
    )
