"""Intent-based settlement through Stripe PaymentIntents and signed webhooks."""

from __future__ import annotations

import json
import logging
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import stripe

from ..errors import PaymentGatewayError, SignatureVerificationError, ValidationError
from ..models import PaymentMethod
from ..utils import to_minor_units
from .gateway import (
    GatewayCallback,
    PaymentStart,
    SettlementEvent,
    SettlementFlow,
    SettlementOutcome,
    order_metadata,
)

if TYPE_CHECKING:
    from ..models import Order

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"
EVENT_SUCCEEDED = "payment_intent.succeeded"
EVENT_FAILED = "payment_intent.payment_failed"


class StripeGateway:
    """Creates PaymentIntents and verifies Stripe webhook deliveries."""

    method = PaymentMethod.STRIPE
    flow = SettlementFlow.INTENT

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        publishable_key: str = "",
        tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
        client: Any = stripe,
    ):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.publishable_key = publishable_key
        self.tolerance = tolerance
        self._stripe = client

    def _require_key(self) -> None:
        if not self.secret_key:
            raise PaymentGatewayError("stripe", "Stripe is not configured", configured=False)

    def start(self, order: Order, ip_addr: str | None = None) -> PaymentStart:
        """Create a PaymentIntent carrying the order ID in its metadata."""
        self._require_key()
        try:
            intent = self._stripe.PaymentIntent.create(
                amount=to_minor_units(order.total),
                currency=order.currency.lower(),
                metadata=order_metadata(order),
                automatic_payment_methods={"enabled": True},
                api_key=self.secret_key,
            )
        except stripe.StripeError as e:
            logger.error("Stripe PaymentIntent creation failed for %s: %s", order.order_number, e)
            raise PaymentGatewayError("stripe", f"Payment setup failed: {e}") from e
        return PaymentStart(method=self.method, reference=intent.id, client_secret=intent.client_secret)

    def refund(self, payment_intent_id: str, amount: Decimal | None = None) -> str:
        """Refund a captured PaymentIntent, in full unless ``amount`` is given."""
        self._require_key()
        params: dict[str, Any] = {"payment_intent": payment_intent_id}
        if amount is not None:
            params["amount"] = to_minor_units(amount)
        try:
            refund = self._stripe.Refund.create(api_key=self.secret_key, **params)
        except stripe.StripeError as e:
            logger.error("Stripe refund failed for %s: %s", payment_intent_id, e)
            raise PaymentGatewayError("stripe", f"Refund failed: {e}") from e
        return refund.id

    def verify(self, callback: GatewayCallback) -> SettlementEvent:
        """
        Verify a webhook delivery and classify its event.

        Raises:
            SignatureVerificationError: If the secret is missing, the header is
                absent, or the signature/timestamp does not check out.
            ValidationError: If a correctly signed body is not valid JSON.
        """
        if not self.webhook_secret:
            raise SignatureVerificationError("stripe", "webhook secret not configured")

        signature = _header(callback.headers, SIGNATURE_HEADER)
        if not signature:
            raise SignatureVerificationError("stripe", f"missing {SIGNATURE_HEADER} header")

        try:
            payload = callback.body.decode("utf-8")
        except UnicodeDecodeError:
            raise SignatureVerificationError("stripe", "payload is not UTF-8") from None

        try:
            stripe.WebhookSignature.verify_header(
                payload, signature, self.webhook_secret, self.tolerance
            )
        except stripe.SignatureVerificationError as e:
            raise SignatureVerificationError("stripe", str(e)) from None

        try:
            event = json.loads(payload)
        except ValueError:
            raise ValidationError("Webhook payload is not valid JSON") from None

        return parse_event(event)


def _header(headers: Any, name: str) -> str | None:
    value = headers.get(name)
    if value is None:
        for key, candidate in headers.items():
            if key.lower() == name:
                return candidate
    return value


def parse_event(event: dict[str, Any]) -> SettlementEvent:
    """Turn a verified Stripe event into a SettlementEvent."""
    event_type = event.get("type", "")
    obj = (event.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}

    if event_type == EVENT_SUCCEEDED:
        outcome = SettlementOutcome.SUCCEEDED
    elif event_type == EVENT_FAILED:
        outcome = SettlementOutcome.FAILED
    else:
        outcome = SettlementOutcome.IGNORED

    error = obj.get("last_payment_error") or {}
    return SettlementEvent(
        method=PaymentMethod.STRIPE,
        outcome=outcome,
        order_id=metadata.get("order_id"),
        order_number=metadata.get("order_number"),
        transaction_id=obj.get("id"),
        amount_minor=obj.get("amount") if outcome == SettlementOutcome.SUCCEEDED else None,
        message=error.get("message", ""),
        event_type=event_type,
    )
