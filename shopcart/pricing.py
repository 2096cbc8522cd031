"""
Flat-rate tax and weight-tiered shipping.

These are business constants, not a jurisdiction engine: one tax rate and one
shipping table, both read from Config.
"""
from decimal import Decimal
from typing import Optional

from shopcart.config import Config
from shopcart.money import ZERO, Number, clamp_non_negative, quantize, to_decimal

# (max weight in kg, flat cost); heavier parcels use the overweight formula
SHIPPING_TIERS = (
    (Decimal("1"), Decimal("5.99")),
    (Decimal("5"), Decimal("9.99")),
    (Decimal("10"), Decimal("14.99")),
)
OVERWEIGHT_BASE = Decimal("19.99")
OVERWEIGHT_PER_KG = Decimal("1.50")


def calculate_shipping(
    subtotal: Number,
    weight_kg: Number,
    free_threshold: Optional[Decimal] = None,
    item_count: int = 1
) -> Decimal:
    """
    Shipping cost for a cart with the given subtotal and total weight.
    Nothing to ship (item_count 0) costs nothing, whatever the tiers say.
    """
    if item_count <= 0:
        return ZERO

    threshold = Config.FREE_SHIPPING_THRESHOLD if free_threshold is None else free_threshold
    if to_decimal(subtotal) >= threshold:
        return ZERO

    weight = to_decimal(weight_kg)
    for max_weight, cost in SHIPPING_TIERS:
        if weight <= max_weight:
            return cost

    last_tier = SHIPPING_TIERS[-1][0]
    return quantize(OVERWEIGHT_BASE + (weight - last_tier) * OVERWEIGHT_PER_KG)


def calculate_tax(taxable_amount: Number, rate: Optional[Decimal] = None) -> Decimal:
    """Tax on the discounted amount; discounts beyond the subtotal are not taxed negatively"""
    tax_rate = Config.TAX_RATE if rate is None else rate
    return quantize(clamp_non_negative(to_decimal(taxable_amount)) * tax_rate)
