"""Database models for the Payment Reconciler."""
from enum import Enum
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Index, Numeric, String, Uuid

from shared.database import Base, JSONType, utcnow


class PaymentEventType(str, Enum):
    """Gateway webhook event types."""
    CAPTURED = "payment.captured"
    FAILED = "payment.failed"
    REFUNDED = "refund.processed"


class PaymentEvent(Base):
    """Append-only log of verified gateway events."""

    __tablename__ = "payment_events"

    id = Column(Uuid, primary_key=True, default=uuid4)

    # Idempotency key (the gateway's own transaction id)
    provider_txn_id = Column(String(128), nullable=False, unique=True)

    gateway = Column(String(32), nullable=False, default="razorpay")
    event_type = Column(String(40), nullable=False)
    amount = Column(Numeric(12, 2), nullable=True)
    signature_verified = Column(Boolean, nullable=False, default=False)
    transaction_id = Column(Uuid, nullable=False, index=True)
    payload = Column(JSONType, nullable=False)

    received_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_payment_events_transaction_received", "transaction_id", "received_at"),
    )
