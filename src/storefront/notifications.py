"""Order confirmation notifications."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from .models import Order, OrderItem

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Delivers customer-facing messages. Failures may raise; callers log them."""

    def send_order_confirmation(
        self, email: str, name: str, order: Order, items: list[OrderItem]
    ) -> None:
        ...


def render_order_confirmation(name: str, order: Order, items: list[OrderItem]) -> str:
    """Plain-text body of the order confirmation message."""
    lines = [
        f"Hi {name or 'there'},",
        "",
        f"Thank you for your order {order.order_number}.",
        "",
    ]
    for item in items:
        lines.append(f"  {item.quantity} x {item.product_name} @ {item.price} = {item.subtotal}")
    lines += [
        "",
        f"Subtotal: {order.subtotal} {order.currency}",
        f"Shipping: {order.shipping_fee} {order.currency}",
        f"Tax: {order.tax} {order.currency}",
        f"Discount: {order.discount} {order.currency}",
        f"Total: {order.total} {order.currency}",
        f"Payment: {order.payment_method} ({order.payment_status})",
    ]
    return "\n".join(lines)


class LoggingNotifier:
    """Default notifier: renders the message and writes it to the log."""

    def send_order_confirmation(
        self, email: str, name: str, order: Order, items: list[OrderItem]
    ) -> None:
        body = render_order_confirmation(name, order, items)
        logger.info("Order confirmation for %s to %s:\n%s", order.order_number, email, body)


def dispatch_order_confirmation(
    notifier: Notifier, email: str | None, name: str, order: Order, items: list[OrderItem]
) -> None:
    """Send a confirmation, logging instead of raising on any failure."""
    if not email:
        logger.warning("No email address for order %s; confirmation skipped", order.order_number)
        return
    try:
        notifier.send_order_confirmation(email, name, order, items)
    except Exception:
        logger.exception("Failed to send order confirmation for %s", order.order_number)
