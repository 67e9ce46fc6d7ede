"""Checkout database models.

This DB is the source of truth for orders, gateway payment attempts, the
coupon catalog and the service-local outbox.
"""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from festpay.common.db import Base


JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Order(Base):
    """One checkout: immutable apart from status and reconciliation bookkeeping."""

    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("requested_amount > 0", name="ck_orders_requested_positive"),
        CheckConstraint(
            "discount_amount >= 0 AND discount_amount <= requested_amount",
            name="ck_orders_discount_bounds",
        ),
        CheckConstraint(
            "final_amount = requested_amount - discount_amount",
            name="ck_orders_final_derived",
        ),
    )

    order_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    customer_name: Mapped[str] = mapped_column(String(200))
    customer_email: Mapped[str] = mapped_column(String(320), index=True)
    customer_phone: Mapped[str] = mapped_column(String(20))
    cart: Mapped[list] = mapped_column(JSONType)
    requested_amount: Mapped[int] = mapped_column(Integer)
    coupon_code: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    discount_amount: Mapped[int] = mapped_column(Integer, default=0)
    final_amount: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    status: Mapped[str] = mapped_column(String, index=True)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    gateway_session_id: Mapped[str | None] = mapped_column(String, nullable=True)
    reconcile_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    needs_attention: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    attention_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    last_reconciled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )


class OrderIdempotency(Base):
    """Idempotency key -> order mapping; the primary key serializes duplicate submits."""

    __tablename__ = "order_idempotency"

    idempotency_key: Mapped[str] = mapped_column(String(128), primary_key=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.order_id"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )


class PaymentAttempt(Base):
    """Latest gateway-reported fact for one gateway payment ID."""

    __tablename__ = "payment_attempts"

    payment_id: Mapped[str] = mapped_column(String, primary_key=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.order_id"), index=True)
    status: Mapped[str] = mapped_column(String)
    gateway_status: Mapped[str] = mapped_column(String)
    amount: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    message: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_group: Mapped[str | None] = mapped_column(String, nullable=True)
    source: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )


class OrderTimeline(Base):
    """Immutable audit trail of every order status transition."""

    __tablename__ = "order_timeline"

    timeline_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.order_id"), index=True)
    from_state: Mapped[str | None] = mapped_column(String, nullable=True)
    to_state: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String)
    source: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class Coupon(Base):
    """Discount rule administered out of band; only `usage_count` changes here."""

    __tablename__ = "coupons"
    __table_args__ = (
        CheckConstraint("discount_type IN ('PERCENTAGE', 'FIXED')", name="ck_coupons_discount_type"),
        CheckConstraint("discount_value >= 0", name="ck_coupons_value_non_negative"),
        CheckConstraint(
            "discount_type <> 'PERCENTAGE' OR (discount_value > 0 AND discount_value <= 100)",
            name="ck_coupons_percentage_range",
        ),
        CheckConstraint("usage_count >= 0", name="ck_coupons_usage_non_negative"),
        CheckConstraint("code = upper(code)", name="ck_coupons_code_upper"),
    )

    code: Mapped[str] = mapped_column(String(64), primary_key=True)
    discount_type: Mapped[str] = mapped_column(String(16))
    discount_value: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    min_order_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_discount_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    usage_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    description: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class CouponRedemption(Base):
    """One row per redeemed order; the unique order ID caps redemption at once per order."""

    __tablename__ = "coupon_redemptions"

    redemption_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    coupon_code: Mapped[str] = mapped_column(ForeignKey("coupons.code"), index=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.order_id"), unique=True)
    discount_amount: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class OutboxEvent(Base):
    """Events waiting to be published to Kafka by the checkout service."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSONType)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
