"""
Coupon and gift-card lookups used when applying discounts to a cart.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from shopcart.exceptions import NotFoundError, ValidationError
from shopcart.models import CouponDefinition, GiftCardBalance
from shopcart.redis_client import RedisClient


class DiscountBook:
    """Redeemable coupons and gift cards"""

    def __init__(self, redis: RedisClient):
        self.redis = redis

    def _get_coupon_key(self, code: str) -> str:
        return f"coupon:{code.strip().upper()}"

    def _get_gift_card_key(self, code: str) -> str:
        return f"giftcard:{code.strip().upper()}"

    def save_coupon(self, coupon: CouponDefinition) -> CouponDefinition:
        self.redis.set(self._get_coupon_key(coupon.code), coupon.model_dump_json())
        return coupon

    def save_gift_card(self, gift_card: GiftCardBalance) -> GiftCardBalance:
        self.redis.set(self._get_gift_card_key(gift_card.code), gift_card.model_dump_json())
        return gift_card

    def validate_coupon(self, code: str, subtotal: Decimal, now: datetime) -> CouponDefinition:
        """
        Look up a coupon and check it can be used on a cart with this subtotal.

        Raises:
            NotFoundError: unknown code
            ValidationError: inactive, expired or below the minimum spend
        """
        raw = self.redis.get(self._get_coupon_key(code))
        if raw is None:
            raise NotFoundError(f"Coupon not found: {code}")

        coupon = CouponDefinition.model_validate_json(raw)
        if not coupon.active:
            raise ValidationError(f"Coupon is no longer active: {coupon.code}")
        if coupon.expires_at is not None and coupon.expires_at <= now:
            raise ValidationError(f"Coupon has expired: {coupon.code}")
        if coupon.min_subtotal is not None and subtotal < coupon.min_subtotal:
            raise ValidationError(
                f"Coupon {coupon.code} requires a subtotal of at least {coupon.min_subtotal}"
            )
        return coupon

    def get_gift_card(self, code: str) -> Optional[GiftCardBalance]:
        raw = self.redis.get(self._get_gift_card_key(code))
        if raw is None:
            return None
        return GiftCardBalance.model_validate_json(raw)
