"""Order totals and the pluggable fee policies."""

from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Iterable

from .utils import to_money

# A policy receives the order subtotal and returns an amount
FeePolicy = Callable[[Decimal], Decimal]


def zero_fee(subtotal: Decimal) -> Decimal:
    return Decimal("0.00")


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    shipping_fee: Decimal
    tax: Decimal
    discount: Decimal
    total: Decimal


@dataclass
class PricingPolicy:
    """
    Shipping, tax and discount hooks applied at checkout.

    No shipping, tax or discount rules exist yet, so every hook defaults to
    zero and ``total == subtotal``.
    """

    shipping_fee: FeePolicy = zero_fee
    tax: FeePolicy = zero_fee
    discount: FeePolicy = zero_fee

    def compute(self, line_totals: Iterable[Decimal]) -> OrderTotals:
        subtotal = to_money(sum(line_totals, Decimal("0")))
        shipping_fee = to_money(self.shipping_fee(subtotal))
        tax = to_money(self.tax(subtotal))
        discount = to_money(self.discount(subtotal))
        return OrderTotals(
            subtotal=subtotal,
            shipping_fee=shipping_fee,
            tax=tax,
            discount=discount,
            total=subtotal + shipping_fee + tax - discount,
        )
