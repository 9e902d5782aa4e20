"""Database models for the Transaction Engine."""
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, Numeric, String, Text, Uuid

from shared.database import Base, JSONType, utcnow

from .lifecycle import PaymentStatus


class Transaction(Base):
    """Booking or sale order aggregate root."""

    __tablename__ = "transactions"

    id = Column(Uuid, primary_key=True, default=uuid4)
    kind = Column(String(10), nullable=False)
    subject_id = Column(String(128), nullable=False, index=True)
    status = Column(String(30), nullable=False, index=True)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)

    # Order details
    items = Column(JSONType, nullable=False)  # [{"sku": str, "quantity": int}]
    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)
    rental_days = Column(Integer, nullable=True)
    device_fingerprint = Column(String(255), nullable=True)

    # Server-side pricing
    currency = Column(String(3), nullable=False, default="INR")
    base_amount = Column(Numeric(12, 2), nullable=False)
    tax_amount = Column(Numeric(12, 2), nullable=False)
    deposit_amount = Column(Numeric(12, 2), nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)

    # Risk
    risk_score = Column(Integer, nullable=False, default=0)
    risk_factors = Column(JSONType, nullable=False, default=list)
    risk_decision = Column(String(20), nullable=True)
    risk_policy_version = Column(String(32), nullable=True)

    # Payment and stock tracking
    provider_order_id = Column(String(64), nullable=True)
    payment_deadline = Column(DateTime, nullable=True)
    refund_required = Column(Boolean, nullable=False, default=False)
    deposit_refunded = Column(Boolean, nullable=False, default=False)
    stock_held = Column(Boolean, nullable=False, default=False)
    is_overdue = Column(Boolean, nullable=False, default=False)
    cancellation_reason = Column(String(40), nullable=True)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_transactions_status_deadline", "status", "payment_deadline"),
        Index("ix_transactions_status_created", "status", "created_at"),
        Index("ix_transactions_subject_created", "subject_id", "created_at"),
        Index("ix_transactions_kind_window", "kind", "start_date", "end_date"),
    )


class TransactionAudit(Base):
    """Append-only audit notes for every transition and failure."""

    __tablename__ = "transaction_audit"

    id = Column(Uuid, primary_key=True, default=uuid4)
    transaction_id = Column(Uuid, nullable=False, index=True)

    from_status = Column(String(30), nullable=True)
    to_status = Column(String(30), nullable=True)
    actor = Column(String(64), nullable=False, default="system")
    note = Column(Text, nullable=True)
    error_code = Column(String(40), nullable=True)
    details = Column(JSONType, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_transaction_audit_transaction_created", "transaction_id", "created_at"),
    )
