"""
Exact decimal arithmetic for prices, discounts, tax and shipping.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Union

Number = Union[Decimal, int, str, float]

ZERO = Decimal("0")
CENT = Decimal("0.01")


def to_decimal(value: Number) -> Decimal:
    """Convert to Decimal without float drift (floats go through str)"""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def quantize(value: Number) -> Decimal:
    """Round to whole cents, half up"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def money_sum(values: Iterable[Number]) -> Decimal:
    total = ZERO
    for value in values:
        total += to_decimal(value)
    return total


def percent_of(amount: Number, percent: Number) -> Decimal:
    return to_decimal(amount) * to_decimal(percent) / Decimal("100")


def clamp_non_negative(value: Decimal) -> Decimal:
    return value if value > ZERO else ZERO
