"""Tests for money and text helpers."""

from datetime import datetime
from decimal import Decimal

import pytest

from storefront.utils import format_compact_timestamp, slugify, to_minor_units, to_money


class TestMoney:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("10", Decimal("10.00")),
            (Decimal("0.005"), Decimal("0.01")),
            (Decimal("2.344"), Decimal("2.34")),
            (4.99, Decimal("4.99")),
            (0, Decimal("0.00")),
        ],
    )
    def test_to_money(self, value, expected):
        assert to_money(value) == expected
        assert str(to_money(value)) == str(expected)

    def test_minor_units(self):
        assert to_minor_units(Decimal("20.00")) == 2000
        assert to_minor_units(Decimal("123.45")) == 12345
        assert to_minor_units(Decimal("0.1")) == 10


class TestSlugify:
    def test_basic(self):
        assert slugify("Clean Code") == "clean-code"
        assert slugify("  USB-C  Cable (2m) ") == "usb-c-cable-2m"

    def test_strips_accents(self):
        assert slugify("Cà phê sữa") == "ca-phe-sua"

    def test_fallback(self):
        assert slugify("!!!") == "item"


def test_compact_timestamp():
    assert format_compact_timestamp(datetime(2025, 1, 2, 3, 4, 5)) == "20250102030405"
