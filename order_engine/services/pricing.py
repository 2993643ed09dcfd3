"""Pluggable order amount calculators (tax, shipping, discount)."""

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, List

# Receives the priced line items and the subtotal, returns an amount
AmountCalculator = Callable[[List[Any], Decimal], Decimal]

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def zero_amount(items: List[Any], subtotal: Decimal) -> Decimal:
    return Decimal("0.00")


class FixedAmount:
    """Always returns the same amount, e.g. a flat shipping fee."""

    def __init__(self, amount):
        self.amount = to_money(amount)

    def __call__(self, items: List[Any], subtotal: Decimal) -> Decimal:
        return self.amount
