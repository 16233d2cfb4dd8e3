"""Tests for checkout and the order lifecycle."""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from storefront.cart import OwnerKey
from storefront.errors import (
    EmptyCartError,
    InsufficientStockError,
    InvalidStateError,
    OrderNotFoundError,
    ValidationError,
)
from storefront.models import Order, Product
from storefront.order_numbers import format_order_number
from storefront.orders import OrderService
from storefront.pricing import PricingPolicy

from .conftest import make_address, place_order, stock_of


def order_count(services) -> int:
    with services.db.unit_of_work() as uow:
        return uow.session.scalar(select(func.count(Order.id)))


class TestCreateOrder:
    def test_single_line(self, services, products):
        order = place_order(services, "user-1", [(products["widget"], 2)])

        assert order.subtotal == Decimal("20.00")
        assert order.total == Decimal("20.00")
        assert order.status == "pending"
        assert order.payment_status == "pending"
        assert order.payment_method == "cod"
        assert order.currency == "USD"
        assert len(order.items) == 1
        item = order.items[0]
        assert item.product_name == "Widget"
        assert item.product_sku == "WID-1"
        assert item.price == Decimal("10.00")
        assert item.subtotal == Decimal("20.00")
        assert order.shipping_address.city == "London"

        assert stock_of(services, products["widget"]) == 3
        assert services.carts.get_cart(OwnerKey(user_id="user-1")).items == []

    def test_total_is_sum_of_lines(self, services, products):
        order = place_order(
            services,
            "user-1",
            [(products["widget"], 2), (products["gadget"], 1), (products["gizmo"], 3)],
        )

        # 2 * 10.00 + 25.50 + 3 * 4.99
        assert order.subtotal == Decimal("60.47")
        assert order.total == order.subtotal + order.shipping_fee + order.tax - order.discount
        assert sum(item.subtotal for item in order.items) == order.subtotal
        assert stock_of(services, products["gadget"]) == 2
        assert stock_of(services, products["gizmo"]) == 97

    def test_item_price_comes_from_cart(self, services, products):
        services.carts.add_item(OwnerKey(user_id="user-1"), products["widget"], 1)
        with services.db.unit_of_work() as uow:
            uow.session.get(Product, products["widget"]).price = Decimal("99.00")

        order = services.orders.create_order("user-1", make_address())
        assert order.items[0].price == Decimal("10.00")
        assert order.total == Decimal("10.00")

    def test_empty_cart(self, services, products):
        with pytest.raises(EmptyCartError):
            services.orders.create_order("user-1", make_address())

        services.carts.get_cart(OwnerKey(user_id="user-1"))
        with pytest.raises(EmptyCartError):
            services.orders.create_order("user-1", make_address())

    def test_stock_changed_since_carting(self, services, products):
        services.carts.add_item(OwnerKey(user_id="user-1"), products["widget"], 3)
        with services.db.unit_of_work() as uow:
            services.catalog.adjust_stock(uow.session, products["widget"], -4)

        with pytest.raises(InsufficientStockError) as exc_info:
            services.orders.create_order("user-1", make_address())

        assert exc_info.value.product_id == products["widget"]
        assert stock_of(services, products["widget"]) == 1
        assert order_count(services) == 0
        assert services.carts.get_cart(OwnerKey(user_id="user-1")).item_count == 3

    def test_failure_leaves_every_line_untouched(self, services, products):
        owner = OwnerKey(user_id="user-1")
        services.carts.add_item(owner, products["widget"], 2)
        services.carts.add_item(owner, products["gadget"], 3)
        with services.db.unit_of_work() as uow:
            services.catalog.adjust_stock(uow.session, products["gadget"], -1)

        with pytest.raises(InsufficientStockError):
            services.orders.create_order("user-1", make_address())

        assert stock_of(services, products["widget"]) == 5
        assert stock_of(services, products["gadget"]) == 2
        assert order_count(services) == 0

    def test_failed_checkout_does_not_consume_order_number(self, services, products):
        owner = OwnerKey(user_id="user-1")
        services.carts.add_item(owner, products["gadget"], 3)
        with services.db.unit_of_work() as uow:
            services.catalog.adjust_stock(uow.session, products["gadget"], -1)
        with pytest.raises(InsufficientStockError):
            services.orders.create_order("user-1", make_address())

        services.carts.clear_cart(owner)
        order = place_order(services, "user-1", [(products["widget"], 1)])
        assert order.order_number == "ORD-20250101-0001"

    def test_unknown_payment_method(self, services, products):
        services.carts.add_item(OwnerKey(user_id="user-1"), products["widget"], 1)
        with pytest.raises(ValidationError):
            services.orders.create_order("user-1", make_address(), payment_method="cheque")
        assert stock_of(services, products["widget"]) == 5

    def test_email_falls_back_to_customer(self, services, products, notifier):
        services.carts.add_item(OwnerKey(user_id="user-1"), products["widget"], 1)
        order = services.orders.create_order(
            "user-1", make_address(email=None), customer_email="buyer@example.com"
        )
        assert order.shipping_address.email == "buyer@example.com"
        assert notifier.sent[-1]["email"] == "buyer@example.com"

    def test_pricing_policy_applied(self, services, products, clock):
        orders = OrderService(
            services.db,
            cart_service=services.carts,
            catalog=services.catalog,
            pricing=PricingPolicy(
                shipping_fee=lambda subtotal: Decimal("5.00"),
                tax=lambda subtotal: subtotal * Decimal("0.1"),
                discount=lambda subtotal: Decimal("2.00"),
            ),
            clock=clock,
        )
        services.carts.add_item(OwnerKey(user_id="user-1"), products["widget"], 2)
        order = orders.create_order("user-1", make_address())

        assert order.subtotal == Decimal("20.00")
        assert order.total == Decimal("25.00")


class TestOrderNumbers:
    def test_format(self):
        assert format_order_number(date(2025, 1, 1), 1) == "ORD-20250101-0001"
        assert format_order_number(date(2025, 12, 31), 42) == "ORD-20251231-0042"

    def test_sequence_per_day(self, services, products, clock):
        first = place_order(services, "user-1", [(products["gizmo"], 1)])
        second = place_order(services, "user-2", [(products["gizmo"], 1)])
        clock.now = datetime(2025, 1, 2, 0, 5, tzinfo=timezone.utc)
        next_day = place_order(services, "user-1", [(products["gizmo"], 1)])

        assert first.order_number == "ORD-20250101-0001"
        assert second.order_number == "ORD-20250101-0002"
        assert next_day.order_number == "ORD-20250102-0001"


class TestNotifications:
    def test_confirmation_sent_after_commit(self, services, products, notifier):
        order = place_order(services, "user-1", [(products["widget"], 2)])

        assert notifier.sent == [
            {
                "email": "ada@example.com",
                "name": "Ada",
                "order_number": order.order_number,
                "items": 1,
            }
        ]

    def test_notifier_failure_keeps_order(self, services, products, notifier, caplog):
        notifier.fail = True
        with caplog.at_level(logging.ERROR, logger="storefront.notifications"):
            order = place_order(services, "user-1", [(products["widget"], 1)])

        assert "Failed to send order confirmation" in caplog.text
        assert services.orders.get_order(order.id).order_number == order.order_number
        assert stock_of(services, products["widget"]) == 4

    def test_no_confirmation_when_checkout_fails(self, services, products, notifier):
        with pytest.raises(EmptyCartError):
            services.orders.create_order("user-1", make_address())
        assert notifier.sent == []


class TestCancelOrder:
    def test_cancel_restores_stock(self, services, products):
        order = place_order(
            services, "user-1", [(products["widget"], 2), (products["gadget"], 1)]
        )
        assert stock_of(services, products["widget"]) == 3

        cancelled = services.orders.cancel_order(order.id, "user-1")

        assert cancelled.status == "cancelled"
        assert stock_of(services, products["widget"]) == 5
        assert stock_of(services, products["gadget"]) == 3

    def test_cancel_twice_restores_once(self, services, products):
        order = place_order(services, "user-1", [(products["widget"], 2)])
        services.orders.cancel_order(order.id, "user-1")

        with pytest.raises(InvalidStateError) as exc_info:
            services.orders.cancel_order(order.id, "user-1")

        assert exc_info.value.current == "cancelled"
        assert stock_of(services, products["widget"]) == 5

    @pytest.mark.parametrize("status", ["processing", "shipped", "delivered", "cancelled"])
    def test_only_pending_can_cancel(self, services, products, status):
        order = place_order(services, "user-1", [(products["widget"], 2)])
        services.orders.update_status(order.id, status=status)

        with pytest.raises(InvalidStateError) as exc_info:
            services.orders.cancel_order(order.id, "user-1")

        assert exc_info.value.current == status
        assert services.orders.get_order(order.id).status == status
        assert stock_of(services, products["widget"]) == 3

    def test_other_users_order_not_found(self, services, products):
        order = place_order(services, "user-1", [(products["widget"], 1)])
        with pytest.raises(OrderNotFoundError):
            services.orders.cancel_order(order.id, "user-2")


class TestQueries:
    def test_get_order_scoped_to_user(self, services, products):
        order = place_order(services, "user-1", [(products["widget"], 1)])

        assert services.orders.get_order(order.id, "user-1").id == order.id
        assert services.orders.get_order(order.id).id == order.id
        with pytest.raises(OrderNotFoundError):
            services.orders.get_order(order.id, "user-2")

    def test_list_filters_and_pages(self, services, products):
        place_order(services, "user-1", [(products["gizmo"], 1)])
        place_order(services, "user-1", [(products["gizmo"], 3)])
        third = place_order(services, "user-1", [(products["gizmo"], 2)])
        place_order(services, "user-2", [(products["gizmo"], 1)])
        services.orders.cancel_order(third.id, "user-1")

        orders, total = services.orders.list_orders(user_id="user-1", limit=2)
        assert total == 3
        assert len(orders) == 2

        orders, total = services.orders.list_orders(user_id="user-1", status="cancelled")
        assert total == 1
        assert orders[0].id == third.id

        orders, total = services.orders.list_orders(sort="total", direction="asc")
        assert total == 4
        assert [o.total for o in orders] == sorted(o.total for o in orders)

    def test_list_rejects_bad_filters(self, services):
        with pytest.raises(ValidationError):
            services.orders.list_orders(status="lost")
        with pytest.raises(ValidationError):
            services.orders.list_orders(sort="name")
        with pytest.raises(ValidationError):
            services.orders.list_orders(page=0)


class TestAdminOverride:
    def test_sets_any_values(self, services, products):
        order = place_order(services, "user-1", [(products["widget"], 1)])

        updated = services.orders.update_status(
            order.id, status="delivered", payment_status="refunded"
        )
        assert updated.status == "delivered"
        assert updated.payment_status == "refunded"

        # No transition rules: straight back to pending
        updated = services.orders.update_status(order.id, status="pending")
        assert updated.status == "pending"
        assert updated.payment_status == "refunded"

    def test_unknown_value(self, services, products):
        order = place_order(services, "user-1", [(products["widget"], 1)])
        with pytest.raises(ValidationError):
            services.orders.update_status(order.id, status="lost")
