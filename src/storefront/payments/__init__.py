"""Payment gateways and order settlement."""

from .gateway import (
    GatewayCallback,
    GatewayRegistry,
    PaymentGateway,
    PaymentStart,
    SettlementEvent,
    SettlementFlow,
    SettlementOutcome,
)
from .service import PaymentService, VNPayOutcome, build_gateways
from .settlement import Settlement, SettlementResult, mark_order_paid, mark_order_payment_failed
from .stripe_gateway import StripeGateway
from .vnpay import VNPayGateway

__all__ = [
    "GatewayCallback",
    "GatewayRegistry",
    "PaymentGateway",
    "PaymentService",
    "PaymentStart",
    "SettlementEvent",
    "SettlementFlow",
    "SettlementOutcome",
    "Settlement",
    "SettlementResult",
    "StripeGateway",
    "VNPayGateway",
    "VNPayOutcome",
    "build_gateways",
    "mark_order_paid",
    "mark_order_payment_failed",
]
