"""Checkout workflow and order lifecycle operations."""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, selectinload

from .cart import CartService, OwnerKey
from .catalog import CatalogStore
from .database import Database
from .errors import (
    EmptyCartError,
    InsufficientStockError,
    InvalidStateError,
    OrderNotFoundError,
    ProductNotFoundError,
    ValidationError,
)
from .models import (
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Product,
    ShippingAddress,
)
from .notifications import LoggingNotifier, Notifier, dispatch_order_confirmation
from .order_numbers import generate_order_number
from .order_status import ensure_cancellable, status_sources
from .pricing import PricingPolicy
from .utils import to_money

logger = logging.getLogger(__name__)

SORT_FIELDS = {"created_at": Order.created_at, "total": Order.total}


def utc_clock() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ShippingAddressInput:
    """Delivery address supplied at checkout."""

    first_name: str
    last_name: str
    address_line1: str
    city: str
    country: str
    email: str | None = None
    phone: str | None = None
    address_line2: str | None = None
    state: str | None = None
    postal_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def parse_payment_method(value: str | PaymentMethod) -> PaymentMethod:
    try:
        return PaymentMethod(value)
    except ValueError:
        allowed = ", ".join(m.value for m in PaymentMethod)
        raise ValidationError(
            f"Unsupported payment method '{value}' (expected one of: {allowed})",
            field="payment_method",
        ) from None


def order_query():
    """SELECT for orders with their items and address eagerly loaded."""
    return select(Order).options(
        selectinload(Order.items), selectinload(Order.shipping_address)
    )


def load_order(session: Session, order_id: str, user_id: str | None = None) -> Order:
    """
    Load an order, optionally scoped to its owner.

    Raises:
        OrderNotFoundError: If no such order exists for that user.
    """
    stmt = order_query().where(Order.id == order_id)
    if user_id is not None:
        stmt = stmt.where(Order.user_id == user_id)
    order = session.scalar(stmt)
    if order is None:
        raise OrderNotFoundError(order_id)
    return order


class OrderService:
    """Turns carts into orders and applies customer and admin transitions."""

    def __init__(
        self,
        db: Database,
        cart_service: CartService | None = None,
        catalog: CatalogStore | None = None,
        notifier: Notifier | None = None,
        pricing: PricingPolicy | None = None,
        currency: str = "USD",
        clock: Callable[[], datetime] = utc_clock,
    ):
        self.db = db
        self.catalog = catalog or CatalogStore()
        self.cart_service = cart_service or CartService(db, self.catalog)
        self.notifier = notifier or LoggingNotifier()
        self.pricing = pricing or PricingPolicy()
        self.currency = currency
        self.clock = clock

    def create_order(
        self,
        user_id: str,
        shipping_address: ShippingAddressInput,
        payment_method: str | PaymentMethod = PaymentMethod.COD,
        notes: str | None = None,
        customer_email: str | None = None,
        customer_name: str | None = None,
    ) -> Order:
        """
        Convert the user's cart into an order.

        Stock validation, order and snapshot inserts, stock decrements and
        clearing the cart all happen in one transaction. The confirmation
        notification is sent only after that transaction commits, and its
        failure never affects the order.

        Raises:
            EmptyCartError: If the cart has no items.
            ProductNotFoundError: If a carted product no longer exists.
            InsufficientStockError: If any line exceeds available stock.
            ValidationError: If the payment method is unknown.
        """
        method = parse_payment_method(payment_method)
        now = self.clock()

        with self.db.unit_of_work() as uow:
            session = uow.session
            cart = self.cart_service.find_cart(session, OwnerKey(user_id=user_id))
            if cart is None or not cart.items:
                raise EmptyCartError()
            lines = list(cart.items)

            # Stock may have moved since the cart was last touched
            products: dict[str, Product] = {}
            for line in lines:
                product = session.get(
                    Product, line.product_id, with_for_update=True, populate_existing=True
                )
                if product is None:
                    raise ProductNotFoundError(line.product_id)
                if product.stock_quantity < line.quantity:
                    raise InsufficientStockError(
                        product.id, product.name, product.stock_quantity, line.quantity
                    )
                products[product.id] = product

            order_number = generate_order_number(session, now.date())
            totals = self.pricing.compute(line.line_total for line in lines)

            order = Order(
                user_id=user_id,
                order_number=order_number,
                status=OrderStatus.PENDING.value,
                payment_status=PaymentStatus.PENDING.value,
                payment_method=method.value,
                subtotal=totals.subtotal,
                shipping_fee=totals.shipping_fee,
                tax=totals.tax,
                discount=totals.discount,
                total=totals.total,
                currency=self.currency,
                notes=notes or None,
                created_at=now,
                updated_at=now,
            )
            session.add(order)
            session.flush()

            for line in lines:
                product = products[line.product_id]
                order.items.append(
                    OrderItem(
                        product_id=product.id,
                        product_name=product.name,
                        product_sku=product.sku,
                        quantity=line.quantity,
                        price=to_money(line.price),
                        subtotal=to_money(line.line_total),
                    )
                )

            address = shipping_address.to_dict()
            address["email"] = address.get("email") or customer_email
            order.shipping_address = ShippingAddress(**address)
            session.flush()

            for line in lines:
                self.catalog.adjust_stock(session, line.product_id, -line.quantity)

            self.cart_service.clear_items(session, cart)

            uow.after_commit(
                dispatch_order_confirmation,
                self.notifier,
                order.shipping_address.email,
                shipping_address.first_name or customer_name or "",
                order,
                list(order.items),
            )

        logger.info(
            "Order %s created for user %s (%d items, total %s %s)",
            order.order_number,
            user_id,
            len(order.items),
            order.total,
            order.currency,
        )
        return order

    def get_order(self, order_id: str, user_id: str | None = None) -> Order:
        with self.db.unit_of_work() as uow:
            return load_order(uow.session, order_id, user_id)

    def list_orders(
        self,
        user_id: str | None = None,
        status: str | None = None,
        payment_status: str | None = None,
        sort: str = "created_at",
        direction: str = "desc",
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[Order], int]:
        """
        List orders newest first (or by total), with optional filters.

        Returns:
            Tuple of (orders on the requested page, total matching count).
        """
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be at least 1")
        if sort not in SORT_FIELDS:
            raise ValidationError(f"Cannot sort by '{sort}'", field="sort")
        if direction.lower() not in ("asc", "desc"):
            raise ValidationError(f"Invalid sort direction '{direction}'", field="order")

        try:
            status = OrderStatus(status).value if status else None
            payment_status = PaymentStatus(payment_status).value if payment_status else None
        except ValueError as e:
            raise ValidationError(str(e)) from None

        filters = []
        if user_id is not None:
            filters.append(Order.user_id == user_id)
        if status:
            filters.append(Order.status == status)
        if payment_status:
            filters.append(Order.payment_status == payment_status)

        column = SORT_FIELDS[sort]
        ordering = column.asc() if direction.lower() == "asc" else column.desc()

        with self.db.unit_of_work() as uow:
            session = uow.session
            total = session.scalar(select(func.count(Order.id)).where(*filters)) or 0
            stmt = (
                order_query()
                .where(*filters)
                .order_by(ordering, Order.order_number.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            return list(session.scalars(stmt)), total

    def cancel_order(self, order_id: str, user_id: str) -> Order:
        """
        Cancel a pending order and put its stock back.

        The status write and every stock restore share one transaction, and
        the status write only matches a still-pending row, so stock is
        restored exactly once even when two cancels race.

        Raises:
            OrderNotFoundError: If the order doesn't exist for this user.
            InvalidStateError: If the order is not pending.
        """
        with self.db.unit_of_work() as uow:
            session = uow.session
            order = load_order(session, order_id, user_id)
            ensure_cancellable(order)

            result = session.execute(
                update(Order)
                .where(
                    Order.id == order.id,
                    Order.status.in_(status_sources(OrderStatus.CANCELLED)),
                )
                .values(status=OrderStatus.CANCELLED.value)
            )
            if result.rowcount == 0:
                session.refresh(order, ["status"])
                raise InvalidStateError(order.order_number, order.status, "cancel")

            for item in order.items:
                self.catalog.adjust_stock(session, item.product_id, item.quantity)

            session.refresh(order, ["status", "updated_at"])

        logger.info("Order %s cancelled by user %s", order.order_number, user_id)
        return order

    def update_status(
        self,
        order_id: str,
        status: str | None = None,
        payment_status: str | None = None,
    ) -> Order:
        """
        Admin override: set status and/or payment_status to any known value.

        No transition rules are applied; only the values themselves are checked.
        """
        try:
            new_status = OrderStatus(status) if status else None
            new_payment_status = PaymentStatus(payment_status) if payment_status else None
        except ValueError as e:
            raise ValidationError(str(e)) from None

        with self.db.unit_of_work() as uow:
            order = load_order(uow.session, order_id)
            if new_status is not None:
                order.status = new_status.value
            if new_payment_status is not None:
                order.payment_status = new_payment_status.value
            uow.session.flush()

        logger.info(
            "Admin override on order %s: status=%s payment_status=%s",
            order.order_number,
            order.status,
            order.payment_status,
        )
        return order
