"""
Payment gateway collaborator.

The engine never talks to a card network itself; it asks the gateway for a
payment intent and trusts webhook events only after their HMAC-SHA256
signature has been checked against the shared webhook secret.
"""
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Protocol
from uuid import UUID, uuid4

logger = logging.getLogger(__name__)

SIGNATURE_FIELD = "signature"


@dataclass(frozen=True)
class PaymentIntent:
    """What a client needs to open the gateway checkout."""

    provider_order_id: str
    amount: Decimal
    amount_minor: int
    currency: str
    gateway: str


class PaymentGateway(Protocol):
    """Interface the engine expects from a payment provider."""

    async def create_payment_intent(
        self, transaction_id: UUID, amount: Decimal, currency: str
    ) -> PaymentIntent:
        ...

    def verify_webhook_signature(self, payload: Dict[str, Any], signature: str) -> bool:
        ...


def canonical_payload(payload: Dict[str, Any]) -> bytes:
    """Stable byte form of a webhook body, excluding the signature itself."""
    body = {key: value for key, value in payload.items() if key != SIGNATURE_FIELD}
    return json.dumps(body, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


class HmacPaymentGateway:
    """Gateway adapter for providers that sign webhooks with a shared secret."""

    def __init__(self, webhook_secret: str, name: str = "razorpay"):
        if not webhook_secret:
            raise ValueError("webhook_secret must not be empty")
        self._secret = webhook_secret.encode("utf-8")
        self.name = name

    def sign(self, payload: Dict[str, Any]) -> str:
        return hmac.new(self._secret, canonical_payload(payload), hashlib.sha256).hexdigest()

    def verify_webhook_signature(self, payload: Dict[str, Any], signature: str) -> bool:
        if not signature:
            return False
        return hmac.compare_digest(self.sign(payload), signature)

    async def create_payment_intent(
        self, transaction_id: UUID, amount: Decimal, currency: str
    ) -> PaymentIntent:
        intent = PaymentIntent(
            provider_order_id=f"order_{uuid4().hex[:14]}",
            amount=amount,
            amount_minor=int(amount * 100),
            currency=currency,
            gateway=self.name,
        )
        logger.info(
            f"Created {self.name} payment intent {intent.provider_order_id} "
            f"for transaction {transaction_id}: {amount} {currency}"
        )
        return intent
