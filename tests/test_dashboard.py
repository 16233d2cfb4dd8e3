"""Tests for dashboard reporting."""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from storefront.errors import ValidationError

from .conftest import place_order


@pytest.fixture
def sales(services, products, clock):
    """Orders across two days: two paid, one pending, one cancelled."""
    clock.now = datetime(2024, 12, 31, 15, 0, tzinfo=timezone.utc)
    old = place_order(services, "user-1", [(products["gadget"], 1)])
    services.orders.update_status(old.id, payment_status="paid")

    clock.now = datetime(2025, 1, 1, 9, 30, tzinfo=timezone.utc)
    paid = place_order(services, "user-2", [(products["widget"], 2)])
    services.orders.update_status(paid.id, payment_status="paid")
    pending = place_order(services, "user-3", [(products["gizmo"], 1)])
    cancelled = place_order(services, "user-1", [(products["gizmo"], 2)])
    services.orders.cancel_order(cancelled.id, "user-1")
    return {"old": old, "paid": paid, "pending": pending, "cancelled": cancelled}


class TestOverview:
    def test_empty(self, services):
        stats = services.dashboard.overview_stats()
        assert stats["total_revenue"] == Decimal("0.00")
        assert stats["total_orders"] == 0
        assert stats["average_order_value"] == Decimal("0.00")

    def test_counts_paid_revenue_only(self, services, sales):
        stats = services.dashboard.overview_stats()

        assert stats["total_revenue"] == Decimal("45.50")
        assert stats["total_orders"] == 4
        assert stats["total_customers"] == 3
        # 45.50 / 4
        assert stats["average_order_value"] == Decimal("11.38")
        assert stats["pending_orders"] == 3
        # Widget (3 left) and Gadget (2 left) are under 10
        assert stats["low_stock_products"] == 2


class TestOrderStats:
    def test_counts_per_status(self, services, sales):
        stats = services.dashboard.order_stats()

        assert stats["total"] == 4
        assert stats["pending"] == 3
        assert stats["cancelled"] == 1
        assert stats["processing"] == 0
        assert stats["total_revenue"] == Decimal("45.50")


class TestRevenueChart:
    def test_zero_filled_series(self, services, sales):
        series = services.dashboard.revenue_chart(days=3, today=date(2025, 1, 1))

        assert [p["date"] for p in series] == ["2024-12-30", "2024-12-31", "2025-01-01"]
        assert [p["revenue"] for p in series] == [
            Decimal("0.00"),
            Decimal("25.50"),
            Decimal("20.00"),
        ]
        assert [p["orders"] for p in series] == [0, 1, 1]

    def test_defaults_to_clock_today(self, services, sales):
        series = services.dashboard.revenue_chart()
        assert len(series) == 7
        assert series[-1]["date"] == "2025-01-01"

    def test_days_must_be_positive(self, services):
        with pytest.raises(ValidationError):
            services.dashboard.revenue_chart(days=0)


class TestListings:
    def test_recent_orders_newest_first(self, services, sales):
        recent = services.dashboard.recent_orders(limit=2)
        assert len(recent) == 2
        assert sales["old"].id not in {o.id for o in recent}

    def test_low_stock_lowest_first(self, services, sales):
        names = [p.name for p in services.dashboard.low_stock_products()]
        assert names == ["Gadget", "Widget"]

        names = [p.name for p in services.dashboard.low_stock_products(threshold=3)]
        assert names == ["Gadget"]

    def test_top_products(self, services, sales):
        top = services.dashboard.top_products(limit=1)
        assert top == [
            {
                "product_id": sales["cancelled"].items[0].product_id,
                "product_name": "Gizmo",
                "total_sold": 3,
                "total_revenue": Decimal("14.97"),
            }
        ]
