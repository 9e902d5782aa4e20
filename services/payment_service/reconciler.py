"""
Payment Reconciler.

Consumes gateway webhook events. Each event is verified, deduplicated by the
gateway's transaction id, stored in the append-only payment log and applied
to its transaction exactly once, all in one unit of work under the
transaction's lock.
"""
import json
import logging
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as SchemaError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from services.transaction_service.engine import TransactionEngine
from shared.errors import NotFound, ValidationError

from .gateway import PaymentGateway, canonical_payload
from .models import PaymentEvent, PaymentEventType

logger = logging.getLogger(__name__)


class ReconcileResult(str, Enum):
    """Outcome of recording one webhook event."""
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    INVALID_SIGNATURE = "invalid_signature"


class WebhookEvent(BaseModel):
    """Fields the reconciler needs from a gateway webhook body."""

    model_config = ConfigDict(extra="allow")

    event_type: PaymentEventType
    provider_txn_id: str
    transaction_id: UUID
    amount: Optional[Decimal] = None
    gateway: Optional[str] = None


class PaymentReconciler:
    """Turns verified gateway events into engine payment facts."""

    def __init__(self, engine: TransactionEngine, gateway: PaymentGateway):
        self.engine = engine
        self.gateway = gateway
        self._handlers = {
            PaymentEventType.CAPTURED: engine.handle_payment_success,
            PaymentEventType.FAILED: engine.handle_payment_failure,
            PaymentEventType.REFUNDED: engine.handle_refund,
        }

    async def record_event(
        self, provider_txn_id: str, payload: Dict[str, Any], signature: Optional[str]
    ) -> ReconcileResult:
        """
        Verify, deduplicate, store and apply one webhook event.

        Returns:
            INVALID_SIGNATURE without storing anything if verification fails,
            DUPLICATE if the provider id was already recorded, ACCEPTED otherwise

        Raises:
            ValidationError: malformed body, unknown transaction, amount mismatch
            InvalidTransition: event not applicable to the transaction's state
            TransientStoreError: nothing was committed, safe to retry
        """
        if not self.gateway.verify_webhook_signature(payload, signature or ""):
            logger.warning(f"Rejected webhook {provider_txn_id}: invalid signature")
            return ReconcileResult.INVALID_SIGNATURE

        event = self._parse(provider_txn_id, payload)
        handler = self._handlers[event.event_type]

        try:
            async with self.engine.locked_session(event.transaction_id) as session:
                if await self._already_recorded(session, provider_txn_id):
                    logger.info(f"Duplicate payment event {provider_txn_id} ignored")
                    return ReconcileResult.DUPLICATE

                try:
                    transaction = await self.engine.load(session, event.transaction_id)
                except NotFound:
                    raise ValidationError(
                        f"Payment event {provider_txn_id} references unknown transaction "
                        f"{event.transaction_id}",
                        provider_txn_id=provider_txn_id,
                    )

                record = PaymentEvent(
                    provider_txn_id=provider_txn_id,
                    gateway=event.gateway or getattr(self.gateway, "name", "unknown"),
                    event_type=event.event_type.value,
                    amount=event.amount,
                    signature_verified=True,
                    transaction_id=event.transaction_id,
                    payload=json.loads(canonical_payload(payload)),
                )
                session.add(record)
                await session.flush()

                await handler(session, transaction, record)

        except IntegrityError:
            # Another worker stored the same provider id first
            logger.info(f"Payment event {provider_txn_id} was recorded concurrently")
            return ReconcileResult.DUPLICATE

        logger.info(
            f"Recorded {event.event_type.value} {provider_txn_id} "
            f"for transaction {event.transaction_id}"
        )
        return ReconcileResult.ACCEPTED

    def _parse(self, provider_txn_id: str, payload: Dict[str, Any]) -> WebhookEvent:
        try:
            event = WebhookEvent.model_validate(payload)
        except SchemaError as e:
            raise ValidationError(
                f"Malformed payment event {provider_txn_id}",
                errors=str(e.errors()),
            )
        if event.provider_txn_id != provider_txn_id:
            raise ValidationError(
                "provider_txn_id does not match the event body",
                provider_txn_id=provider_txn_id,
            )
        return event

    async def _already_recorded(self, session, provider_txn_id: str) -> bool:
        result = await session.execute(
            select(PaymentEvent.id).where(PaymentEvent.provider_txn_id == provider_txn_id)
        )
        return result.scalar_one_or_none() is not None
