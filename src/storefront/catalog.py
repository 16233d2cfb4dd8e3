"""Catalog store: product lookup and atomic stock adjustment."""

from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .errors import ConflictError, InsufficientStockError, ProductNotFoundError, ValidationError
from .models import Product
from .utils import slugify, to_money


class CatalogStore:
    """Reads products and applies relative stock updates within a caller's session."""

    def create_product(
        self,
        session: Session,
        name: str,
        price: Decimal | str,
        stock_quantity: int = 0,
        sku: str | None = None,
        slug: str | None = None,
        is_active: bool = True,
    ) -> Product:
        """
        Add a product to the catalog.

        Raises:
            ValidationError: If price or stock is negative.
            ConflictError: If the slug or sku is already taken.
        """
        price = to_money(price)
        if price < 0:
            raise ValidationError("Price must not be negative", field="price")
        if stock_quantity < 0:
            raise ValidationError("Stock quantity must not be negative", field="stock_quantity")

        slug = slug or slugify(name)
        if session.scalar(select(Product.id).where(Product.slug == slug)) is not None:
            raise ConflictError(f"Product slug already exists: {slug}")
        if sku and session.scalar(select(Product.id).where(Product.sku == sku)) is not None:
            raise ConflictError(f"Product sku already exists: {sku}")

        product = Product(
            name=name,
            slug=slug,
            sku=sku,
            price=price,
            stock_quantity=stock_quantity,
            is_active=is_active,
        )
        session.add(product)
        session.flush()
        return product

    def get_product(self, session: Session, product_id: str, active_only: bool = False) -> Product:
        """
        Get a product by ID.

        Raises:
            ProductNotFoundError: If it doesn't exist (or is inactive with active_only).
        """
        product = session.get(Product, product_id)
        if product is None or (active_only and not product.is_active):
            raise ProductNotFoundError(product_id)
        return product

    def list_products(self, session: Session, active_only: bool = True) -> list[Product]:
        stmt = select(Product).order_by(Product.name)
        if active_only:
            stmt = stmt.where(Product.is_active.is_(True))
        return list(session.scalars(stmt))

    def adjust_stock(self, session: Session, product_id: str, delta: int) -> int:
        """
        Apply ``stock_quantity += delta`` as a single UPDATE.

        Decrements are conditional on enough stock remaining, so concurrent
        orders serialize on the row instead of overwriting each other.

        Returns:
            The stock quantity after the update.

        Raises:
            ProductNotFoundError: If the product doesn't exist.
            InsufficientStockError: If a decrement would take stock below zero.
        """
        stmt = (
            update(Product)
            .where(Product.id == product_id)
            .values(stock_quantity=Product.stock_quantity + delta)
            .execution_options(synchronize_session=False)
        )
        if delta < 0:
            stmt = stmt.where(Product.stock_quantity >= -delta)
        result = session.execute(stmt)

        # Reload so objects already in the session see the stored value
        product = session.get(Product, product_id, populate_existing=True)
        if product is None:
            raise ProductNotFoundError(product_id)
        if result.rowcount == 0:
            raise InsufficientStockError(product.id, product.name, product.stock_quantity, -delta)
        return product.stock_quantity
