"""Tests for cart operations."""

from decimal import Decimal

import pytest

from storefront.cart import OwnerKey
from storefront.errors import (
    CartItemNotFoundError,
    InsufficientStockError,
    ProductNotFoundError,
    ValidationError,
)
from storefront.models import Product

USER = OwnerKey(user_id="user-1")
GUEST = OwnerKey(session_id="sess-abc")


def set_price(services, product_id, price):
    with services.db.unit_of_work() as uow:
        uow.session.get(Product, product_id).price = Decimal(price)


class TestOwnerKey:
    def test_requires_some_identity(self):
        with pytest.raises(ValidationError):
            OwnerKey()

    def test_user_wins_over_session(self, services, products):
        both = OwnerKey(user_id="user-1", session_id="sess-abc")
        services.carts.add_item(both, products["widget"])

        assert services.carts.get_cart(USER).item_count == 1
        assert services.carts.get_cart(GUEST).item_count == 0
        assert not both.is_guest


class TestAddItem:
    def test_empty_cart_created_lazily(self, services):
        view = services.carts.get_cart(GUEST)
        assert view.items == []
        assert view.subtotal == Decimal("0.00")
        assert view.item_count == 0

    def test_add_captures_price(self, services, products):
        view = services.carts.add_item(USER, products["widget"], 2)

        assert len(view.items) == 1
        line = view.items[0]
        assert line.quantity == 2
        assert line.price == Decimal("10.00")
        assert line.line_total == Decimal("20.00")
        assert view.subtotal == Decimal("20.00")

    def test_adding_same_product_increments(self, services, products):
        services.carts.add_item(USER, products["widget"], 1)
        view = services.carts.add_item(USER, products["widget"], 2)

        assert len(view.items) == 1
        assert view.items[0].quantity == 3

    def test_combined_quantity_bounded_by_stock(self, services, products):
        services.carts.add_item(USER, products["gadget"], 2)
        with pytest.raises(InsufficientStockError) as exc_info:
            services.carts.add_item(USER, products["gadget"], 2)

        assert exc_info.value.requested == 4
        assert services.carts.get_cart(USER).items[0].quantity == 2

    def test_zero_quantity_rejected(self, services, products):
        with pytest.raises(ValidationError):
            services.carts.add_item(USER, products["widget"], 0)

    def test_unknown_product(self, services):
        with pytest.raises(ProductNotFoundError):
            services.carts.add_item(USER, "no-such-product")

    def test_captured_price_kept_until_readded(self, services, products):
        services.carts.add_item(USER, products["widget"], 1)
        set_price(services, products["widget"], "12.00")

        line = services.carts.get_cart(USER).items[0]
        assert line.price == Decimal("10.00")
        assert line.current_price == Decimal("12.00")

        line = services.carts.add_item(USER, products["widget"], 1).items[0]
        assert line.price == Decimal("12.00")


class TestUpdateAndRemove:
    def test_update_quantity(self, services, products):
        item_id = services.carts.add_item(USER, products["widget"], 1).items[0].id
        view = services.carts.update_item(USER, item_id, 4)
        assert view.items[0].quantity == 4
        assert view.item_count == 4

    def test_update_beyond_stock(self, services, products):
        item_id = services.carts.add_item(USER, products["widget"], 1).items[0].id
        with pytest.raises(InsufficientStockError):
            services.carts.update_item(USER, item_id, 6)

    def test_update_to_zero_rejected(self, services, products):
        item_id = services.carts.add_item(USER, products["widget"], 1).items[0].id
        with pytest.raises(ValidationError):
            services.carts.update_item(USER, item_id, 0)

    def test_item_of_other_cart_not_found(self, services, products):
        item_id = services.carts.add_item(GUEST, products["widget"], 1).items[0].id
        with pytest.raises(CartItemNotFoundError):
            services.carts.remove_item(USER, item_id)

    def test_remove_and_clear(self, services, products):
        services.carts.add_item(USER, products["widget"], 1)
        view = services.carts.add_item(USER, products["gizmo"], 3)
        widget_line = next(i for i in view.items if i.product_id == products["widget"])

        view = services.carts.remove_item(USER, widget_line.id)
        assert [i.product_id for i in view.items] == [products["gizmo"]]

        view = services.carts.clear_cart(USER)
        assert view.items == []
        assert view.subtotal == Decimal("0.00")


class TestMergeCart:
    def test_guest_lines_move_to_user(self, services, products):
        services.carts.add_item(GUEST, products["widget"], 2)
        services.carts.add_item(GUEST, products["gizmo"], 1)

        view = services.carts.merge_cart("user-1", "sess-abc")

        quantities = {i.product_id: i.quantity for i in view.items}
        assert quantities == {products["widget"]: 2, products["gizmo"]: 1}
        assert services.carts.get_cart(GUEST).items == []

    def test_shared_products_summed_and_capped(self, services, products):
        services.carts.add_item(USER, products["gadget"], 2)
        services.carts.add_item(GUEST, products["gadget"], 2)

        view = services.carts.merge_cart("user-1", "sess-abc")

        assert len(view.items) == 1
        assert view.items[0].quantity == 3  # stock is 3

    def test_without_session_returns_user_cart(self, services, products):
        services.carts.add_item(USER, products["widget"], 1)
        view = services.carts.merge_cart("user-1", None)
        assert view.item_count == 1
