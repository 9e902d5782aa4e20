"""Notification collaborators fed by the outbox publisher."""
import logging
from typing import Any, Dict, Protocol

from shared.events import deserialize_event
from shared.message_broker import MessageBroker

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Fire-and-forget notification interface."""

    async def notify(self, subject_id: str, event_kind: str, payload: Dict[str, Any]) -> None:
        ...


# Customer-facing headline per event kind
HEADLINES = {
    "transaction.created": "Booking received",
    "transaction.status_changed": "Booking status updated",
    "transaction.cancelled": "Booking cancelled",
    "payment.captured": "Payment confirmed",
    "payment.failed": "Payment failed",
    "payment.refunded": "Refund completed",
    "refund.required": "Refund initiated",
    "rental.overdue": "Rental overdue",
}


class LoggingNotifier:
    """
    Log notifications instead of delivering them.

    In a real deployment this is replaced by a push/SMS/email provider.
    """

    async def notify(self, subject_id: str, event_kind: str, payload: Dict[str, Any]) -> None:
        headline = HEADLINES.get(event_kind, event_kind)
        logger.info(f"[NOTIFY] To: {subject_id}")
        logger.info(f"[NOTIFY] {headline} (transaction {payload.get('aggregate_id')})")
        if event_kind == "transaction.status_changed":
            logger.info(
                f"[NOTIFY] {payload.get('from_status')} -> {payload.get('to_status')}"
            )


class BrokerNotifier:
    """Publish notifications to RabbitMQ for the delivery service to consume."""

    def __init__(self, message_broker: MessageBroker):
        self.message_broker = message_broker

    async def notify(self, subject_id: str, event_kind: str, payload: Dict[str, Any]) -> None:
        event = deserialize_event(payload)
        await self.message_broker.publish_event(event, routing_key=f"notify.{event_kind}")
