"""Applying verified gateway outcomes to orders.

Both settlement protocols end here. Every write is a conditional UPDATE
whose source states come from the order lifecycle tables, so a replayed
callback for a paid or refunded order changes nothing and triggers no
second notification.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from sqlalchemy import case, update
from sqlalchemy.orm import Session

from ..database import UnitOfWork
from ..models import Order, OrderStatus, PaymentStatus
from ..notifications import Notifier, dispatch_order_confirmation
from ..order_status import payment_sources, status_sources
from ..orders import order_query
from ..utils import to_minor_units
from .gateway import SettlementEvent, SettlementOutcome

logger = logging.getLogger(__name__)


class SettlementResult(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    ORDER_NOT_FOUND = "order_not_found"
    AMOUNT_MISMATCH = "amount_mismatch"
    IGNORED = "ignored"


@dataclass
class SettlementReport:
    result: SettlementResult
    order: Order | None = None
    # Money was captured for an order the customer had already cancelled
    needs_refund: bool = False


def _refresh_payment_fields(session: Session, order: Order) -> None:
    session.refresh(order, ["status", "payment_status", "payment_reference", "updated_at"])


def mark_order_paid(session: Session, order: Order, transaction_id: str | None) -> bool:
    """
    Settle an order as paid.

    Moves payment_status pending/failed -> paid and, if the order is still
    pending, status -> processing. Returns False when the payment was already
    paid or refunded.
    """
    result = session.execute(
        update(Order)
        .where(
            Order.id == order.id,
            Order.payment_status.in_(payment_sources(PaymentStatus.PAID)),
        )
        .values(
            payment_status=PaymentStatus.PAID.value,
            payment_reference=transaction_id or Order.payment_reference,
            status=case(
                (
                    Order.status.in_(status_sources(OrderStatus.PROCESSING)),
                    OrderStatus.PROCESSING.value,
                ),
                else_=Order.status,
            ),
        )
        .execution_options(synchronize_session=False)
    )
    _refresh_payment_fields(session, order)
    if result.rowcount == 0:
        logger.info(
            "Order %s payment already %s; paid event ignored",
            order.order_number,
            order.payment_status,
        )
        return False
    logger.info("Order %s marked as paid (transaction %s)", order.order_number, transaction_id)
    return True


def mark_order_payment_failed(session: Session, order: Order) -> bool:
    """Move payment_status pending -> failed. Returns False if not pending."""
    result = session.execute(
        update(Order)
        .where(
            Order.id == order.id,
            Order.payment_status.in_(payment_sources(PaymentStatus.FAILED)),
        )
        .values(payment_status=PaymentStatus.FAILED.value)
        .execution_options(synchronize_session=False)
    )
    _refresh_payment_fields(session, order)
    if result.rowcount == 0:
        logger.info(
            "Order %s payment already %s; failure event ignored",
            order.order_number,
            order.payment_status,
        )
        return False
    logger.info("Order %s payment marked as failed", order.order_number)
    return True


def find_order_for_event(session: Session, event: SettlementEvent) -> Order | None:
    if event.order_id:
        return session.scalar(order_query().where(Order.id == event.order_id))
    if event.order_number:
        return session.scalar(order_query().where(Order.order_number == event.order_number))
    return None


class Settlement:
    """Applies SettlementEvents and queues confirmations on first payment."""

    def __init__(self, notifier: Notifier):
        self.notifier = notifier

    def apply(self, uow: UnitOfWork, event: SettlementEvent) -> SettlementReport:
        if event.outcome == SettlementOutcome.IGNORED:
            logger.info("Unhandled %s event type '%s'", event.method.value, event.event_type)
            return SettlementReport(SettlementResult.IGNORED)

        session = uow.session
        order = find_order_for_event(session, event)
        if order is None:
            logger.warning(
                "%s event references unknown order (id=%s, number=%s)",
                event.method.value,
                event.order_id,
                event.order_number,
            )
            return SettlementReport(SettlementResult.ORDER_NOT_FOUND)

        if event.amount_minor is not None and event.amount_minor != to_minor_units(order.total):
            logger.warning(
                "%s amount %s does not match order %s total %s",
                event.method.value,
                event.amount_minor,
                order.order_number,
                order.total,
            )
            return SettlementReport(SettlementResult.AMOUNT_MISMATCH, order)

        if event.outcome == SettlementOutcome.SUCCEEDED:
            changed = mark_order_paid(session, order, event.transaction_id)
            if changed and order.status == OrderStatus.CANCELLED.value:
                logger.warning(
                    "Order %s was paid after it was cancelled (transaction %s); refund required",
                    order.order_number,
                    event.transaction_id,
                )
                return SettlementReport(SettlementResult.APPLIED, order, needs_refund=True)
            if changed:
                address = order.shipping_address
                uow.after_commit(
                    dispatch_order_confirmation,
                    self.notifier,
                    address.email if address else None,
                    address.first_name if address else "",
                    order,
                    list(order.items),
                )
        else:
            changed = mark_order_payment_failed(session, order)

        return SettlementReport(
            SettlementResult.APPLIED if changed else SettlementResult.DUPLICATE, order
        )

