"""Wiring of the services the API and CLI share."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from .cart import CartService
from .catalog import CatalogStore
from .config import Settings
from .dashboard import DashboardService
from .database import Database
from .notifications import LoggingNotifier, Notifier
from .orders import OrderService, utc_clock
from .payments import PaymentService, build_gateways


@dataclass
class Services:
    settings: Settings
    db: Database
    catalog: CatalogStore
    carts: CartService
    orders: OrderService
    payments: PaymentService
    dashboard: DashboardService

    def close(self) -> None:
        self.db.dispose()


def build_services(
    settings: Settings,
    notifier: Optional[Notifier] = None,
    stripe_client: Any = None,
    clock: Callable[[], datetime] = utc_clock,
    create_schema: bool = True,
) -> Services:
    """Create the database and every service from settings."""
    db = Database(settings.database_url)
    if create_schema:
        db.create_schema()

    notifier = notifier or LoggingNotifier()
    catalog = CatalogStore()
    carts = CartService(db, catalog)
    orders = OrderService(
        db,
        cart_service=carts,
        catalog=catalog,
        notifier=notifier,
        currency=settings.currency,
        clock=clock,
    )
    payments = PaymentService(
        db, build_gateways(settings, stripe_client=stripe_client), notifier=notifier
    )
    dashboard = DashboardService(
        db,
        low_stock_threshold=settings.low_stock_threshold,
        today=lambda: clock().date(),
    )
    return Services(
        settings=settings,
        db=db,
        catalog=catalog,
        carts=carts,
        orders=orders,
        payments=payments,
        dashboard=dashboard,
    )
