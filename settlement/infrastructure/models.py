"""SQLAlchemy models for database tables.

Provides ORM models for pending_stripe_payment, cart_order_mapping,
settlement_order and stripe_event_log, with converters to and from the
domain aggregates.
"""

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB

from settlement.domain.entities import CartOrderMapping, Order, OrderPayment, PendingPayment
from settlement.domain.state_machines import (
    FailureType,
    OrderPaymentState,
    OrderState,
    PaymentStatus,
)
from settlement.infrastructure.database import Base


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime | None) -> datetime | None:
    """Attach UTC to timestamps read back from backends that drop the zone."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# JSONB on PostgreSQL, plain JSON elsewhere
JsonColumn = JSON().with_variant(JSONB(), "postgresql")


# ============================================================================
# Pending Payment Model
# ============================================================================


class PendingStripePaymentModel(Base):
    """A PaymentIntent linked to an order and awaiting settlement."""

    __tablename__ = "pending_stripe_payment"
    __table_args__ = (
        Index("ix_pending_stripe_payment_status_created_at", "status", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    payment_intent_id = Column(String(255), nullable=False, unique=True)
    order_id = Column(String(36), nullable=False, index=True)
    order_code = Column(String(100), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    customer_email = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default="pending")

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)
    settled_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)

    # Failure details
    failure_reason = Column(Text, nullable=True)
    failure_type = Column(String(20), nullable=True)
    is_retryable = Column(Boolean, nullable=False, default=False)
    retry_count = Column(Integer, nullable=False, default=0)

    # Administrative actions
    manual_settlement = Column(Boolean, nullable=False, default=False)
    settled_by = Column(String(255), nullable=True)
    canceled_by = Column(String(255), nullable=True)

    @classmethod
    def from_entity(cls, payment: PendingPayment) -> "PendingStripePaymentModel":
        return cls(
            id=payment.id,
            payment_intent_id=payment.payment_intent_id,
            order_id=payment.order_id,
            order_code=payment.order_code,
            amount=payment.amount,
            currency=payment.currency,
            customer_email=payment.customer_email,
            status=payment.status.value,
            created_at=payment.created_at,
            updated_at=payment.updated_at,
            settled_at=payment.settled_at,
            failed_at=payment.failed_at,
            failure_reason=payment.failure_reason,
            failure_type=payment.failure_type.value if payment.failure_type else None,
            is_retryable=payment.is_retryable,
            retry_count=payment.retry_count,
            manual_settlement=payment.manual_settlement,
            settled_by=payment.settled_by,
            canceled_by=payment.canceled_by,
        )

    def to_entity(self) -> PendingPayment:
        return PendingPayment(
            id=self.id,
            payment_intent_id=self.payment_intent_id,
            order_id=self.order_id,
            order_code=self.order_code,
            amount=self.amount,
            currency=self.currency,
            customer_email=self.customer_email,
            status=PaymentStatus(self.status),
            created_at=_aware(self.created_at),
            updated_at=_aware(self.updated_at or self.created_at),
            settled_at=_aware(self.settled_at),
            failed_at=_aware(self.failed_at),
            failure_reason=self.failure_reason,
            failure_type=FailureType(self.failure_type) if self.failure_type else None,
            is_retryable=bool(self.is_retryable),
            retry_count=self.retry_count or 0,
            manual_settlement=bool(self.manual_settlement),
            settled_by=self.settled_by,
            canceled_by=self.canceled_by,
        )


# ============================================================================
# Cart Order Mapping Model
# ============================================================================


class CartOrderMappingModel(Base):
    """Storefront cart UUID to order mapping."""

    __tablename__ = "cart_order_mapping"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    cart_uuid = Column(String(255), nullable=False, unique=True)
    order_id = Column(String(36), nullable=False)
    order_code = Column(String(100), nullable=False, index=True)
    payment_intent_id = Column(String(255), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    @classmethod
    def from_entity(cls, mapping: CartOrderMapping) -> "CartOrderMappingModel":
        return cls(
            id=mapping.id,
            cart_uuid=mapping.cart_uuid,
            order_id=mapping.order_id,
            order_code=mapping.order_code,
            payment_intent_id=mapping.payment_intent_id,
            created_at=mapping.created_at,
            updated_at=mapping.updated_at,
            completed_at=mapping.completed_at,
        )

    def to_entity(self) -> CartOrderMapping:
        return CartOrderMapping(
            id=self.id,
            cart_uuid=self.cart_uuid,
            order_id=self.order_id,
            order_code=self.order_code,
            payment_intent_id=self.payment_intent_id,
            created_at=_aware(self.created_at),
            updated_at=_aware(self.updated_at or self.created_at),
            completed_at=_aware(self.completed_at),
        )


# ============================================================================
# Order Model
# ============================================================================


class OrderModel(Base):
    """Local order book; attached payments are kept as a JSON list."""

    __tablename__ = "settlement_order"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    code = Column(String(100), nullable=False, unique=True)
    total = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    customer_email = Column(String(255), nullable=True)
    state = Column(String(40), nullable=False)
    payments = Column(JsonColumn, nullable=False, default=list)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    @classmethod
    def from_entity(cls, order: Order) -> "OrderModel":
        return cls(
            id=order.id,
            code=order.code,
            total=order.total,
            currency=order.currency,
            customer_email=order.customer_email,
            state=order.state.value,
            payments=[p.to_dict() for p in order.payments],
            version=order.version,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )

    def to_entity(self) -> Order:
        return Order(
            id=self.id,
            code=self.code,
            total=self.total,
            currency=self.currency,
            customer_email=self.customer_email,
            state=OrderState(self.state),
            payments=[
                OrderPayment(
                    id=p["id"],
                    method=p["method"],
                    amount=p["amount"],
                    state=OrderPaymentState(p["state"]),
                    transaction_id=p.get("transaction_id"),
                    metadata=p.get("metadata") or {},
                    created_at=datetime.fromisoformat(p["created_at"]),
                )
                for p in self.payments or []
            ],
            version=self.version or 1,
            created_at=_aware(self.created_at),
            updated_at=_aware(self.updated_at or self.created_at),
        )


# ============================================================================
# Stripe Event Log Model
# ============================================================================


class StripeEventLogModel(Base):
    """Received Stripe webhook events, used for deduplication and replay."""

    __tablename__ = "stripe_event_log"
    __table_args__ = (
        Index("ix_stripe_event_log_status_received_at", "status", "received_at"),
    )

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=False, index=True)
    payment_intent_id = Column(String(255), nullable=True, index=True)
    payload_hash = Column(String(64), nullable=False)
    payload = Column(JsonColumn, nullable=False)
    status = Column(String(20), nullable=False, default="received")
    error_message = Column(Text, nullable=True)
    received_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "payment_intent_id": self.payment_intent_id,
            "payload_hash": self.payload_hash,
            "payload": self.payload,
            "status": self.status,
            "error_message": self.error_message,
            "received_at": self.received_at.isoformat() if self.received_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }
