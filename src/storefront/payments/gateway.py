"""Gateway protocol, verified settlement events and the gateway registry."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Mapping, Protocol

from ..errors import ValidationError
from ..models import PaymentMethod

if TYPE_CHECKING:
    from ..models import Order


class SettlementFlow(str, Enum):
    """How a gateway reports outcomes."""

    INTENT = "intent"  # token created up front, gateway pushes a signed event
    REDIRECT = "redirect"  # browser returns with signed query parameters


class SettlementOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    IGNORED = "ignored"  # verified, but not an event we act on


@dataclass
class GatewayCallback:
    """Raw inbound callback exactly as the transport received it."""

    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)
    params: Mapping[str, str] = field(default_factory=dict)


@dataclass
class SettlementEvent:
    """A gateway outcome whose authenticity has already been verified."""

    method: PaymentMethod
    outcome: SettlementOutcome
    order_id: str | None = None
    order_number: str | None = None
    transaction_id: str | None = None
    amount_minor: int | None = None  # amount the gateway reports, in minor units
    response_code: str | None = None
    message: str = ""
    event_type: str = ""


class PaymentGateway(Protocol):
    """Protocol for payment rails.

    Each gateway verifies its own callbacks and turns them into
    SettlementEvents. ``verify`` must have no side effects and must raise
    SignatureVerificationError for anything it cannot authenticate.
    """

    method: PaymentMethod
    flow: SettlementFlow

    def start(self, order: Order, ip_addr: str | None = None) -> "PaymentStart":
        """Open a payment attempt with the gateway for an order."""
        ...

    def verify(self, callback: GatewayCallback) -> SettlementEvent:
        """Authenticate a callback and extract the outcome it reports."""
        ...


@dataclass
class PaymentStart:
    """What a client needs to continue a payment attempt."""

    method: PaymentMethod
    reference: str  # intent id or payment URL
    client_secret: str | None = None


class GatewayRegistry:
    """Maps each online payment method to its gateway."""

    def __init__(self) -> None:
        self._gateways: dict[PaymentMethod, PaymentGateway] = {}

    def register(self, gateway: PaymentGateway) -> None:
        self._gateways[gateway.method] = gateway

    def get(self, method: PaymentMethod | str) -> PaymentGateway:
        """
        Raises:
            ValidationError: If the method has no online settlement (e.g. cod).
        """
        method = PaymentMethod(method)
        if method not in self._gateways:
            raise ValidationError(
                f"Payment method '{method.value}' has no online settlement",
                field="payment_method",
            )
        return self._gateways[method]


def order_metadata(order: Order) -> dict[str, str]:
    return {"order_id": order.id, "order_number": order.order_number}
