"""Order lifecycle rules.

Orders carry two independent state fields:

    status          pending -> processing -> shipped -> delivered
                    pending -> cancelled
    payment_status  pending -> paid -> refunded
                    pending -> failed -> pending (a new payment attempt)
                    failed -> paid (a declined attempt later succeeds)

Settlement couples them in one place: a successful payment moves
``payment_status`` to paid and, if the order is still pending, ``status`` to
processing. Every conditional UPDATE that moves an order takes its allowed
source states from the tables below. Admin overrides bypass these rules
entirely.
"""

from .errors import InvalidStateError
from .models import Order, OrderStatus, PaymentStatus

ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PAID, PaymentStatus.FAILED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.PENDING, PaymentStatus.PAID}),
    PaymentStatus.PAID: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset(),
}

# No new payment attempt may start from these
SETTLED_PAYMENT_STATES = frozenset({PaymentStatus.PAID, PaymentStatus.REFUNDED})


def can_transition_status(current: str, target: str) -> bool:
    return OrderStatus(target) in ORDER_TRANSITIONS[OrderStatus(current)]


def can_transition_payment(current: str, target: str) -> bool:
    return PaymentStatus(target) in PAYMENT_TRANSITIONS[PaymentStatus(current)]


def status_sources(target: OrderStatus) -> list[str]:
    """Stored ``status`` values an order may move to ``target`` from."""
    return [s.value for s, targets in ORDER_TRANSITIONS.items() if target in targets]


def payment_sources(target: PaymentStatus) -> list[str]:
    """
    Stored ``payment_status`` values an order may move to ``target`` from.

    Examples:
        PAID -> ["pending", "failed"]
        REFUNDED -> ["paid"]
    """
    return [s.value for s, targets in PAYMENT_TRANSITIONS.items() if target in targets]


def payment_attempt_states() -> list[str]:
    """``payment_status`` values from which a new payment attempt may start."""
    return [s.value for s in PaymentStatus if s not in SETTLED_PAYMENT_STATES]


def can_cancel(order: Order) -> bool:
    return can_transition_status(order.status, OrderStatus.CANCELLED.value)


def ensure_cancellable(order: Order) -> None:
    """
    Raises:
        InvalidStateError: If the order is no longer pending.
    """
    if not can_cancel(order):
        raise InvalidStateError(order.order_number, order.status, "cancel")


def is_payment_settled(order: Order) -> bool:
    return PaymentStatus(order.payment_status) in SETTLED_PAYMENT_STATES
