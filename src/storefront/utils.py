"""Utility functions for storefront."""

import re
import unicodedata
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")


def to_money(value: Decimal | int | float | str) -> Decimal:
    """Quantize an amount to 2 decimal places (half-up)."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit amount to integer minor units (e.g. dollars to cents)."""
    return int((to_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def slugify(text: str) -> str:
    """
    Build a URL slug from free text.

    Examples:
        "Clean Code" -> "clean-code"
        "Cà phê sữa" -> "ca-phe-sua"
    """
    normalized = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    slug = re.sub(r"[^a-zA-Z0-9]+", "-", normalized).strip("-").lower()
    return slug or "item"


def format_compact_timestamp(value: datetime) -> str:
    """Format a datetime as yyyyMMddHHmmss."""
    return value.strftime("%Y%m%d%H%M%S")
