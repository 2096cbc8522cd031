from decimal import Decimal

import pytest

from shopcart.money import clamp_non_negative, money_sum, percent_of, quantize, to_decimal
from shopcart.pricing import calculate_shipping, calculate_tax


def test_float_goes_through_str():
    assert to_decimal(0.1) == Decimal("0.1")


def test_quantize_rounds_half_up():
    assert quantize(Decimal("2.345")) == Decimal("2.35")
    assert quantize(Decimal("2.344")) == Decimal("2.34")


def test_money_helpers():
    assert money_sum([Decimal("1.10"), 2, "0.05"]) == Decimal("3.15")
    assert percent_of(Decimal("50"), 10) == Decimal("5")
    assert clamp_non_negative(Decimal("-3")) == Decimal("0")


@pytest.mark.parametrize("weight, expected", [
    ("0.5", "5.99"),
    ("1", "5.99"),
    ("2", "9.99"),
    ("5", "9.99"),
    ("7.5", "14.99"),
    ("12", "22.99"),
])
def test_shipping_tiers(weight, expected):
    assert calculate_shipping(Decimal("50"), Decimal(weight)) == Decimal(expected)


def test_free_shipping_at_threshold():
    assert calculate_shipping(Decimal("100"), Decimal("30")) == Decimal("0")
    assert calculate_shipping(Decimal("99.99"), Decimal("0.1")) == Decimal("5.99")


def test_tax_on_discounted_amount():
    assert calculate_tax(Decimal("45")) == Decimal("3.60")
    assert calculate_tax(Decimal("-10")) == Decimal("0.00")
    assert calculate_tax(Decimal("10"), rate=Decimal("0.2")) == Decimal("2.00")


def test_nothing_to_ship_costs_nothing():
    assert calculate_shipping(Decimal("0"), Decimal("0"), item_count=0) == Decimal("0")
    # A weightless parcel still ships at the first tier
    assert calculate_shipping(Decimal("0"), Decimal("0"), item_count=1) == Decimal("5.99")
