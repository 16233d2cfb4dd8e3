"""Read-only reporting over orders and products for the admin dashboard."""

from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable

from sqlalchemy import func, select

from .database import Database
from .errors import ValidationError
from .models import Order, OrderItem, OrderStatus, PaymentStatus, Product
from .orders import order_query
from .utils import to_money

ZERO = Decimal("0.00")


def _today_utc() -> date:
    return datetime.now(timezone.utc).date()


class DashboardService:
    """Aggregates for the admin dashboard. Revenue only counts paid orders."""

    def __init__(
        self,
        db: Database,
        low_stock_threshold: int = 10,
        today: Callable[[], date] = _today_utc,
    ):
        self.db = db
        self.low_stock_threshold = low_stock_threshold
        self.today = today

    def overview_stats(self) -> dict[str, Any]:
        with self.db.unit_of_work() as uow:
            session = uow.session
            revenue = session.scalar(
                select(func.coalesce(func.sum(Order.total), 0)).where(
                    Order.payment_status == PaymentStatus.PAID.value
                )
            )
            total_orders = session.scalar(select(func.count(Order.id))) or 0
            customers = session.scalar(select(func.count(func.distinct(Order.user_id)))) or 0
            pending = session.scalar(
                select(func.count(Order.id)).where(Order.status == OrderStatus.PENDING.value)
            ) or 0
            low_stock = session.scalar(
                select(func.count(Product.id)).where(
                    Product.stock_quantity < self.low_stock_threshold,
                    Product.is_active.is_(True),
                )
            ) or 0

        revenue = to_money(revenue or 0)
        return {
            "total_revenue": revenue,
            "total_orders": total_orders,
            "total_customers": customers,
            "average_order_value": to_money(revenue / total_orders) if total_orders else ZERO,
            "pending_orders": pending,
            "low_stock_products": low_stock,
        }

    def order_stats(self) -> dict[str, Any]:
        """Order counts per status plus paid revenue."""
        with self.db.unit_of_work() as uow:
            session = uow.session
            rows = session.execute(
                select(Order.status, func.count(Order.id)).group_by(Order.status)
            ).all()
            revenue = session.scalar(
                select(func.coalesce(func.sum(Order.total), 0)).where(
                    Order.payment_status == PaymentStatus.PAID.value
                )
            )

        counts = {status.value: 0 for status in OrderStatus}
        for status, count in rows:
            counts[status] = count
        return {
            "total": sum(counts.values()),
            **counts,
            "total_revenue": to_money(revenue or 0),
        }

    def revenue_chart(self, days: int = 7, today: date | None = None) -> list[dict[str, Any]]:
        """
        Daily paid revenue for the last ``days`` days, oldest first.

        Days without paid orders are present with zero revenue.
        """
        if days < 1:
            raise ValidationError("days must be at least 1", field="days")
        end = today or self.today()
        start = end - timedelta(days=days - 1)
        since = datetime(start.year, start.month, start.day, tzinfo=timezone.utc)

        with self.db.unit_of_work() as uow:
            rows = uow.session.execute(
                select(Order.created_at, Order.total).where(
                    Order.payment_status == PaymentStatus.PAID.value,
                    Order.created_at >= since,
                )
            ).all()

        revenue: dict[date, Decimal] = defaultdict(lambda: ZERO)
        orders: dict[date, int] = defaultdict(int)
        for created_at, total in rows:
            day = created_at.date()
            revenue[day] += total
            orders[day] += 1

        series = []
        for offset in range(days):
            day = start + timedelta(days=offset)
            series.append(
                {"date": day.isoformat(), "revenue": to_money(revenue[day]), "orders": orders[day]}
            )
        return series

    def recent_orders(self, limit: int = 10) -> list[Order]:
        with self.db.unit_of_work() as uow:
            stmt = order_query().order_by(Order.created_at.desc()).limit(limit)
            return list(uow.session.scalars(stmt))

    def low_stock_products(self, threshold: int | None = None, limit: int = 10) -> list[Product]:
        """Active products below the threshold, lowest stock first."""
        if threshold is None:
            threshold = self.low_stock_threshold
        with self.db.unit_of_work() as uow:
            stmt = (
                select(Product)
                .where(Product.stock_quantity < threshold, Product.is_active.is_(True))
                .order_by(Product.stock_quantity.asc(), Product.name)
                .limit(limit)
            )
            return list(uow.session.scalars(stmt))

    def top_products(self, limit: int = 5) -> list[dict[str, Any]]:
        """Best sellers by quantity across all orders."""
        with self.db.unit_of_work() as uow:
            rows = uow.session.execute(
                select(
                    OrderItem.product_id,
                    OrderItem.product_name,
                    func.sum(OrderItem.quantity).label("total_sold"),
                    func.sum(OrderItem.subtotal).label("total_revenue"),
                )
                .group_by(OrderItem.product_id, OrderItem.product_name)
                .order_by(func.sum(OrderItem.quantity).desc())
                .limit(limit)
            ).all()
        return [
            {
                "product_id": row.product_id,
                "product_name": row.product_name,
                "total_sold": int(row.total_sold),
                "total_revenue": to_money(row.total_revenue),
            }
            for row in rows
        ]
