"""Payment operations exposed to the API: start, settle, inspect, refund."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping

from sqlalchemy import update

from ..config import Settings
from ..database import Database
from ..errors import (
    InvalidStateError,
    OrderNotFoundError,
    PaymentAlreadySettledError,
    PaymentGatewayError,
    SignatureVerificationError,
    StorefrontError,
    ValidationError,
)
from ..models import Order, OrderStatus, PaymentMethod, PaymentStatus
from ..notifications import LoggingNotifier, Notifier
from ..order_status import (
    can_transition_payment,
    is_payment_settled,
    payment_attempt_states,
    payment_sources,
)
from ..orders import load_order
from ..utils import to_money
from .gateway import GatewayCallback, GatewayRegistry, PaymentStart, SettlementOutcome
from .settlement import Settlement, SettlementResult
from .stripe_gateway import StripeGateway
from .vnpay import VNPayGateway, response_message

logger = logging.getLogger(__name__)

# RspCode values VNPay expects back from the IPN endpoint
IPN_CONFIRMED = ("00", "Confirm Success")
IPN_ORDER_NOT_FOUND = ("01", "Order not found")
IPN_ALREADY_CONFIRMED = ("02", "Order already confirmed")
IPN_INVALID_AMOUNT = ("04", "Invalid amount")
IPN_INVALID_SIGNATURE = ("97", "Invalid signature")
IPN_UNKNOWN_ERROR = ("99", "Unknown error")


def _ipn_response(code: tuple[str, str]) -> dict[str, str]:
    return {"RspCode": code[0], "Message": code[1]}


@dataclass
class VNPayOutcome:
    """Result of a browser return from VNPay."""

    success: bool
    message: str
    order_id: str | None
    order_number: str | None
    response_code: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "order_id": self.order_id,
            "order_number": self.order_number,
            "response_code": self.response_code,
        }


def build_gateways(settings: Settings, stripe_client: Any = None) -> GatewayRegistry:
    """Register the Stripe and VNPay gateways from settings."""
    registry = GatewayRegistry()
    stripe_kwargs: dict[str, Any] = {}
    if stripe_client is not None:
        stripe_kwargs["client"] = stripe_client
    registry.register(
        StripeGateway(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            publishable_key=settings.stripe_publishable_key,
            tolerance=settings.stripe_webhook_tolerance,
            **stripe_kwargs,
        )
    )
    registry.register(
        VNPayGateway(
            tmn_code=settings.vnpay_tmn_code,
            hash_secret=settings.vnpay_hash_secret,
            payment_url=settings.vnpay_url,
            return_url=settings.vnpay_return_url,
            utc_offset_hours=settings.vnpay_utc_offset_hours,
            expire_minutes=settings.vnpay_expire_minutes,
        )
    )
    return registry


class PaymentService:
    """Starts payment attempts and settles orders from gateway callbacks."""

    def __init__(
        self,
        db: Database,
        gateways: GatewayRegistry,
        notifier: Notifier | None = None,
    ):
        self.db = db
        self.gateways = gateways
        self.settlement = Settlement(notifier or LoggingNotifier())

    @property
    def stripe(self) -> StripeGateway:
        return self.gateways.get(PaymentMethod.STRIPE)

    @property
    def vnpay(self) -> VNPayGateway:
        return self.gateways.get(PaymentMethod.VNPAY)

    def stripe_config(self) -> dict[str, str]:
        return {"publishable_key": self.stripe.publishable_key}

    def _start(
        self, order_id: str, user_id: str, method: PaymentMethod, ip_addr: str | None = None
    ) -> tuple[Order, PaymentStart]:
        """
        Open a new payment attempt for one of the caller's orders.

        A failed payment goes back to pending so the retry can settle. The
        order's payment method is switched to the one used for this attempt.

        Raises:
            OrderNotFoundError: If the order doesn't exist for this user.
            PaymentAlreadySettledError: If the order is paid or refunded.
            InvalidStateError: If the order was cancelled.
            PaymentGatewayError: If the gateway is unconfigured or fails.
        """
        gateway = self.gateways.get(method)
        with self.db.unit_of_work() as uow:
            session = uow.session
            order = load_order(session, order_id, user_id)
            if is_payment_settled(order):
                raise PaymentAlreadySettledError(order.order_number, order.payment_status)
            if order.status == OrderStatus.CANCELLED.value:
                raise InvalidStateError(order.order_number, order.status, "pay for")

            start = gateway.start(order, ip_addr)

            values: dict[str, Any] = {"payment_method": method.value}
            if method == PaymentMethod.STRIPE:
                values["payment_reference"] = start.reference
            result = session.execute(
                update(Order)
                .where(
                    Order.id == order.id,
                    Order.payment_status.in_(payment_attempt_states()),
                )
                .values(payment_status=PaymentStatus.PENDING.value, **values)
                .execution_options(synchronize_session=False)
            )
            session.refresh(order, ["payment_status", "payment_method", "payment_reference"])
            if result.rowcount == 0:
                raise PaymentAlreadySettledError(order.order_number, order.payment_status)

        logger.info(
            "Started %s payment for order %s (%s)",
            method.value,
            order.order_number,
            order.total,
        )
        return order, start

    def create_payment_intent(self, order_id: str, user_id: str) -> dict[str, Any]:
        """Create a Stripe PaymentIntent and return its client secret."""
        order, start = self._start(order_id, user_id, PaymentMethod.STRIPE)
        return {
            "client_secret": start.client_secret,
            "payment_intent_id": start.reference,
            "order_id": order.id,
            "amount": order.total,
            "currency": order.currency,
        }

    def create_vnpay_url(self, order_id: str, user_id: str, ip_addr: str) -> dict[str, Any]:
        """Build the signed VNPay redirect URL for an order."""
        order, start = self._start(order_id, user_id, PaymentMethod.VNPAY, ip_addr)
        return {"payment_url": start.reference, "order_id": order.id}

    def handle_stripe_webhook(self, payload: bytes, signature: str | None) -> dict[str, bool]:
        """
        Verify and apply a Stripe webhook delivery.

        Unknown event types and events for unknown orders are acknowledged
        without changes so Stripe does not retry them.

        Raises:
            SignatureVerificationError: If the delivery is not authentic.
        """
        headers = {"stripe-signature": signature} if signature else {}
        event = self.stripe.verify(GatewayCallback(body=payload, headers=headers))
        if event.outcome == SettlementOutcome.IGNORED:
            logger.info("Ignoring Stripe event type '%s'", event.event_type)
            return {"received": True}

        if not event.order_id:
            logger.warning("Stripe %s event has no order_id in metadata", event.event_type)
            return {"received": True}

        with self.db.unit_of_work() as uow:
            self.settlement.apply(uow, event)
        return {"received": True}

    def handle_vnpay_return(self, params: Mapping[str, str]) -> VNPayOutcome:
        """
        Verify the customer's browser return and apply its outcome.

        Raises:
            SignatureVerificationError: If the parameters were tampered with.
            OrderNotFoundError: If the referenced order doesn't exist.
        """
        event = self.vnpay.verify(GatewayCallback(params=params))
        with self.db.unit_of_work() as uow:
            report = self.settlement.apply(uow, event)

        if report.result == SettlementResult.ORDER_NOT_FOUND or report.order is None:
            raise OrderNotFoundError(event.order_number or "")

        order = report.order
        if report.result == SettlementResult.AMOUNT_MISMATCH:
            return VNPayOutcome(
                success=False,
                message=IPN_INVALID_AMOUNT[1],
                order_id=order.id,
                order_number=order.order_number,
                response_code=event.response_code,
            )

        success = (
            event.outcome == SettlementOutcome.SUCCEEDED
            and order.payment_status == PaymentStatus.PAID.value
        )
        return VNPayOutcome(
            success=success,
            message=response_message(event.response_code),
            order_id=order.id,
            order_number=order.order_number,
            response_code=event.response_code,
        )

    def handle_vnpay_ipn(self, params: Mapping[str, str]) -> dict[str, str]:
        """
        Server-to-server VNPay notification.

        Always answers with a VNPay RspCode instead of raising.
        """
        try:
            event = self.vnpay.verify(GatewayCallback(params=params))
        except SignatureVerificationError:
            return _ipn_response(IPN_INVALID_SIGNATURE)

        try:
            with self.db.unit_of_work() as uow:
                report = self.settlement.apply(uow, event)
        except StorefrontError:
            logger.exception("VNPay IPN for %s could not be applied", event.order_number)
            return _ipn_response(IPN_UNKNOWN_ERROR)

        if report.result == SettlementResult.ORDER_NOT_FOUND:
            return _ipn_response(IPN_ORDER_NOT_FOUND)
        if report.result == SettlementResult.AMOUNT_MISMATCH:
            return _ipn_response(IPN_INVALID_AMOUNT)
        if report.result == SettlementResult.DUPLICATE:
            return _ipn_response(IPN_ALREADY_CONFIRMED)
        return _ipn_response(IPN_CONFIRMED)

    def get_payment_status(self, order_id: str, user_id: str | None = None) -> dict[str, Any]:
        with self.db.unit_of_work() as uow:
            order = load_order(uow.session, order_id, user_id)
        return {
            "order_id": order.id,
            "order_number": order.order_number,
            "payment_status": order.payment_status,
            "payment_method": order.payment_method,
            "total": order.total,
            "currency": order.currency,
        }

    def refund(self, order_id: str, amount: Decimal | None = None) -> dict[str, Any]:
        """
        Refund a paid order (admin).

        The order is claimed as refunded before the gateway is called, so a
        concurrent refund of the same order fails on the claim instead of
        reaching the gateway. A gateway failure rolls the claim back. Stripe
        orders are refunded through Stripe; other methods are only marked
        refunded. Partial amounts are passed to the gateway but the order is
        marked refunded either way.

        Raises:
            OrderNotFoundError: If the order doesn't exist.
            InvalidStateError: If the order is not paid.
            ValidationError: If the amount is not within (0, total].
            PaymentGatewayError: If the gateway refund fails.
        """
        with self.db.unit_of_work() as uow:
            session = uow.session
            order = load_order(session, order_id)
            if not can_transition_payment(order.payment_status, PaymentStatus.REFUNDED.value):
                raise InvalidStateError(order.order_number, order.payment_status, "refund")

            if amount is not None:
                amount = to_money(amount)
                if amount <= 0 or amount > order.total:
                    raise ValidationError(
                        f"Refund amount must be between 0 and {order.total}", field="amount"
                    )

            is_stripe = order.payment_method == PaymentMethod.STRIPE.value
            if is_stripe and not order.payment_reference:
                raise PaymentGatewayError("stripe", "Order has no payment reference")

            result = session.execute(
                update(Order)
                .where(
                    Order.id == order.id,
                    Order.payment_status.in_(payment_sources(PaymentStatus.REFUNDED)),
                )
                .values(payment_status=PaymentStatus.REFUNDED.value)
                .execution_options(synchronize_session=False)
            )
            session.refresh(order, ["payment_status", "updated_at"])
            if result.rowcount == 0:
                raise InvalidStateError(order.order_number, order.payment_status, "refund")

            refund_id = None
            if is_stripe:
                refund_id = self.stripe.refund(order.payment_reference, amount)

        logger.info("Order %s refunded (%s)", order.order_number, amount or order.total)
        return {
            "success": True,
            "order_id": order.id,
            "refund_id": refund_id,
            "refunded_amount": amount if amount is not None else order.total,
            "payment_status": order.payment_status,
        }
