"""Notification event definitions for the transaction lifecycle."""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from .database import utcnow


class EventType(str, Enum):
    """Externally visible lifecycle events."""

    # Transaction events
    TRANSACTION_CREATED = "transaction.created"
    TRANSACTION_STATUS_CHANGED = "transaction.status_changed"
    TRANSACTION_CANCELLED = "transaction.cancelled"

    # Payment events
    PAYMENT_CAPTURED = "payment.captured"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"
    REFUND_REQUIRED = "refund.required"

    # Rental events
    RENTAL_OVERDUE = "rental.overdue"


class BaseEvent(BaseModel):
    """Base event model with common fields."""

    event_id: UUID = Field(default_factory=uuid4)
    event_type: EventType
    aggregate_id: UUID  # transaction id
    subject_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    version: int = Field(default=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TransactionCreatedEvent(BaseEvent):
    """Emitted when a booking or sale order is created."""
    event_type: EventType = EventType.TRANSACTION_CREATED
    kind: str
    status: str
    total: Decimal


class TransactionStatusChangedEvent(BaseEvent):
    """Emitted on every status transition."""
    event_type: EventType = EventType.TRANSACTION_STATUS_CHANGED
    from_status: str
    to_status: str


class TransactionCancelledEvent(BaseEvent):
    """Emitted when a transaction reaches CANCELLED."""
    event_type: EventType = EventType.TRANSACTION_CANCELLED
    from_status: str
    reason: str


class PaymentCapturedEvent(BaseEvent):
    """Emitted when a verified payment is recorded against a transaction."""
    event_type: EventType = EventType.PAYMENT_CAPTURED
    provider_txn_id: str
    amount: Decimal


class PaymentFailedEvent(BaseEvent):
    """Emitted when the gateway reports a failed payment."""
    event_type: EventType = EventType.PAYMENT_FAILED
    provider_txn_id: str
    reason: Optional[str] = None


class PaymentRefundedEvent(BaseEvent):
    """Emitted when the gateway confirms a refund."""
    event_type: EventType = EventType.PAYMENT_REFUNDED
    provider_txn_id: str
    amount: Decimal


class RefundRequiredEvent(BaseEvent):
    """Emitted when a cancelled transaction holds captured money."""
    event_type: EventType = EventType.REFUND_REQUIRED
    amount: Decimal
    reason: str


class RentalOverdueEvent(BaseEvent):
    """Emitted once when an active rental passes its end date."""
    event_type: EventType = EventType.RENTAL_OVERDUE
    end_date: datetime


# Event Registry for deserialization
EVENT_REGISTRY: Dict[EventType, type[BaseEvent]] = {
    EventType.TRANSACTION_CREATED: TransactionCreatedEvent,
    EventType.TRANSACTION_STATUS_CHANGED: TransactionStatusChangedEvent,
    EventType.TRANSACTION_CANCELLED: TransactionCancelledEvent,

    EventType.PAYMENT_CAPTURED: PaymentCapturedEvent,
    EventType.PAYMENT_FAILED: PaymentFailedEvent,
    EventType.PAYMENT_REFUNDED: PaymentRefundedEvent,
    EventType.REFUND_REQUIRED: RefundRequiredEvent,

    EventType.RENTAL_OVERDUE: RentalOverdueEvent,
}


def deserialize_event(event_data: Dict[str, Any]) -> BaseEvent:
    """Deserialize event from dictionary."""
    event_type = EventType(event_data["event_type"])
    event_class = EVENT_REGISTRY.get(event_type, BaseEvent)
    return event_class(**event_data)
