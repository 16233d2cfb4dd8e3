"""Shopping cart for guests (session-keyed) and signed-in users."""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from .catalog import CatalogStore
from .database import Database
from .errors import CartItemNotFoundError, InsufficientStockError, ValidationError
from .models import Cart, CartItem
from .utils import to_money


@dataclass(frozen=True)
class OwnerKey:
    """Identifies whose cart to use. A user ID wins over a session ID."""

    user_id: str | None = None
    session_id: str | None = None

    def __post_init__(self) -> None:
        if not self.user_id and not self.session_id:
            raise ValidationError("A user ID or session ID is required to access a cart")

    @property
    def is_guest(self) -> bool:
        return not self.user_id

    def __str__(self) -> str:
        return f"user:{self.user_id}" if self.user_id else f"session:{self.session_id}"


@dataclass
class CartLine:
    """One cart line as presented to callers."""

    id: str
    product_id: str
    product_name: str
    product_slug: str
    current_price: Decimal
    stock_quantity: int
    quantity: int
    price: Decimal  # captured unit price
    line_total: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product": {
                "id": self.product_id,
                "name": self.product_name,
                "slug": self.product_slug,
                "price": self.current_price,
                "stock_quantity": self.stock_quantity,
            },
            "quantity": self.quantity,
            "price": self.price,
            "line_total": self.line_total,
        }


@dataclass
class CartView:
    """A cart with computed totals."""

    id: str
    items: list[CartLine] = field(default_factory=list)
    subtotal: Decimal = Decimal("0.00")
    item_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "items": [line.to_dict() for line in self.items],
            "subtotal": self.subtotal,
            "item_count": self.item_count,
        }


def build_cart_view(cart: Cart) -> CartView:
    lines = [
        CartLine(
            id=item.id,
            product_id=item.product_id,
            product_name=item.product.name,
            product_slug=item.product.slug,
            current_price=item.product.price,
            stock_quantity=item.product.stock_quantity,
            quantity=item.quantity,
            price=to_money(item.price),
            line_total=to_money(item.line_total),
        )
        for item in cart.items
    ]
    return CartView(
        id=cart.id,
        items=lines,
        subtotal=to_money(sum((line.line_total for line in lines), Decimal("0"))),
        item_count=sum(line.quantity for line in lines),
    )


class CartService:
    """Cart operations. Quantities are always bounded by current stock."""

    def __init__(self, db: Database, catalog: CatalogStore | None = None):
        self.db = db
        self.catalog = catalog or CatalogStore()

    # --- Session-level helpers (used by checkout inside its own transaction) ---

    def find_cart(self, session: Session, owner: OwnerKey) -> Cart | None:
        if owner.user_id:
            stmt = select(Cart).where(Cart.user_id == owner.user_id)
        else:
            stmt = select(Cart).where(Cart.session_id == owner.session_id)
        return session.scalar(stmt)

    def get_or_create_cart(self, session: Session, owner: OwnerKey) -> Cart:
        """Load the owner's cart, creating an empty one on first access."""
        cart = self.find_cart(session, owner)
        if cart is None:
            cart = Cart(
                user_id=owner.user_id or None,
                session_id=None if owner.user_id else owner.session_id,
            )
            session.add(cart)
            session.flush()
        return cart

    def clear_items(self, session: Session, cart: Cart) -> None:
        cart.items.clear()
        session.flush()

    def _find_item(self, cart: Cart, item_id: str) -> CartItem:
        for item in cart.items:
            if item.id == item_id:
                return item
        raise CartItemNotFoundError(item_id)

    # --- Operations ---

    def get_cart(self, owner: OwnerKey) -> CartView:
        with self.db.unit_of_work() as uow:
            cart = self.get_or_create_cart(uow.session, owner)
            return build_cart_view(cart)

    def add_item(self, owner: OwnerKey, product_id: str, quantity: int = 1) -> CartView:
        """
        Add a product to the cart, or raise the quantity of its existing line.

        The line's captured price is refreshed to the current catalog price.

        Raises:
            ValidationError: If quantity < 1.
            ProductNotFoundError: If the product doesn't exist or is inactive.
            InsufficientStockError: If the resulting quantity exceeds stock.
        """
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1", field="quantity")

        with self.db.unit_of_work() as uow:
            session = uow.session
            cart = self.get_or_create_cart(session, owner)
            product = self.catalog.get_product(session, product_id, active_only=True)

            existing = next((i for i in cart.items if i.product_id == product_id), None)
            new_quantity = quantity + (existing.quantity if existing else 0)
            if new_quantity > product.stock_quantity:
                raise InsufficientStockError(
                    product.id, product.name, product.stock_quantity, new_quantity
                )

            if existing:
                existing.quantity = new_quantity
                existing.price = product.price
            else:
                cart.items.append(
                    CartItem(product=product, quantity=quantity, price=product.price)
                )
            session.flush()
            return build_cart_view(cart)

    def update_item(self, owner: OwnerKey, item_id: str, quantity: int) -> CartView:
        """
        Set a line's quantity.

        Raises:
            ValidationError: If quantity < 1.
            CartItemNotFoundError: If the line isn't in the owner's cart.
            InsufficientStockError: If quantity exceeds stock.
        """
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1", field="quantity")

        with self.db.unit_of_work() as uow:
            cart = self.get_or_create_cart(uow.session, owner)
            item = self._find_item(cart, item_id)
            if quantity > item.product.stock_quantity:
                raise InsufficientStockError(
                    item.product_id, item.product.name, item.product.stock_quantity, quantity
                )
            item.quantity = quantity
            uow.session.flush()
            return build_cart_view(cart)

    def remove_item(self, owner: OwnerKey, item_id: str) -> CartView:
        with self.db.unit_of_work() as uow:
            cart = self.get_or_create_cart(uow.session, owner)
            cart.items.remove(self._find_item(cart, item_id))
            uow.session.flush()
            return build_cart_view(cart)

    def clear_cart(self, owner: OwnerKey) -> CartView:
        with self.db.unit_of_work() as uow:
            cart = self.get_or_create_cart(uow.session, owner)
            self.clear_items(uow.session, cart)
            return build_cart_view(cart)

    def merge_cart(self, user_id: str, session_id: str | None) -> CartView:
        """
        Move a guest cart into the user's cart on login.

        Quantities of products present in both are summed and capped at
        current stock. The guest cart is deleted afterwards.
        """
        user_owner = OwnerKey(user_id=user_id)
        if not session_id:
            return self.get_cart(user_owner)

        with self.db.unit_of_work() as uow:
            session = uow.session
            user_cart = self.get_or_create_cart(session, user_owner)
            guest_cart = self.find_cart(session, OwnerKey(session_id=session_id))
            if guest_cart is None or guest_cart.id == user_cart.id or not guest_cart.items:
                return build_cart_view(user_cart)

            by_product = {item.product_id: item for item in user_cart.items}
            for guest_item in list(guest_cart.items):
                existing = by_product.get(guest_item.product_id)
                if existing:
                    existing.quantity = min(
                        existing.quantity + guest_item.quantity,
                        guest_item.product.stock_quantity,
                    )
                    existing.price = guest_item.price
                else:
                    moved = CartItem(
                        product=guest_item.product,
                        quantity=guest_item.quantity,
                        price=guest_item.price,
                    )
                    user_cart.items.append(moved)
                    by_product[guest_item.product_id] = moved

            session.delete(guest_cart)
            session.flush()
            # Capping at zero stock leaves no line worth keeping
            for item in [i for i in user_cart.items if i.quantity < 1]:
                user_cart.items.remove(item)
            session.flush()
            return build_cart_view(user_cart)
