"""
Cart aggregate: the item collection and its money math.

Everything here is pure computation over the cart's own state and the
product snapshots it is handed. Persistence is the repository's job; stock
holds go through the StockService (or a StockChangeSet that the repository
applies atomically with the cart write) passed into the methods that need it.
Every mutating method ends with recompute_totals(), so stored totals always
equal freshly derived ones.
"""
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, Field

from shopcart.config import Config
from shopcart.exceptions import (
    ItemNotFoundError,
    LimitExceededError,
    NotFoundError,
    ProductUnavailableError,
    ValidationError,
)
from shopcart.models import (
    AddedFrom,
    AddItemOptions,
    AppliedCoupon,
    AppliedDiscount,
    AppliedGiftCard,
    CartTotals,
    CouponDefinition,
    DiscountType,
    GiftOptions,
    Product,
    StockItem,
    utcnow,
)
from shopcart.money import ZERO, clamp_non_negative, money_sum, percent_of, quantize
from shopcart.pricing import calculate_shipping, calculate_tax
from shopcart.stock_service import StockChangeSet, StockService

StockHolds = Union[StockService, StockChangeSet]


def new_id() -> str:
    return uuid.uuid4().hex


class ItemMetadata(BaseModel):
    added_from: AddedFrom = AddedFrom.PRODUCT_PAGE
    added_at: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow)
    price_at_time_of_adding: Optional[Decimal] = None
    price_changed: bool = False
    last_price_update: Optional[datetime] = None


class CartItem(BaseModel):
    """One product (or variant) line in a cart"""
    id: str = Field(default_factory=new_id)
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(1, ge=1)
    price: Decimal = Field(..., description="Price snapshot, refreshed on validation")
    compare_price: Optional[Decimal] = None
    weight: Decimal = Field(Decimal("0"), description="Unit weight in kg")
    customization: Dict[str, str] = Field(default_factory=dict)
    gift: Optional[GiftOptions] = None
    metadata: ItemMetadata = Field(default_factory=ItemMetadata)
    applied_discounts: List[AppliedDiscount] = Field(default_factory=list)
    reservation_id: Optional[str] = None
    reservation_expiry: Optional[datetime] = None
    reserved_quantity: int = 0

    @property
    def subtotal(self) -> Decimal:
        return self.price * self.quantity

    @property
    def savings(self) -> Decimal:
        if self.compare_price is not None and self.compare_price > self.price:
            return (self.compare_price - self.price) * self.quantity
        return ZERO

    @property
    def discount_amount(self) -> Decimal:
        return money_sum(discount.amount for discount in self.applied_discounts)

    @property
    def has_reservation(self) -> bool:
        return self.reservation_id is not None and self.reserved_quantity > 0

    def reservation_expired(self, now: datetime) -> bool:
        return (
            self.has_reservation
            and self.reservation_expiry is not None
            and self.reservation_expiry <= now
        )

    def stock_item(self, quantity: Optional[int] = None) -> StockItem:
        return StockItem(
            product_id=self.product_id,
            variant_id=self.variant_id,
            quantity=self.quantity if quantity is None else quantity
        )

    def record_reservation(
        self,
        quantity: int,
        expiry: Optional[datetime],
        reservation_id: Optional[str] = None
    ) -> None:
        """Add `quantity` to this line's hold and move its expiry"""
        self.reservation_id = self.reservation_id or reservation_id or new_id()
        self.reserved_quantity += quantity
        self.reservation_expiry = expiry

    def clear_reservation(self) -> None:
        self.reservation_id = None
        self.reservation_expiry = None
        self.reserved_quantity = 0

    def matches(self, product_id: str, variant_id: Optional[str]) -> bool:
        return self.product_id == product_id and (self.variant_id or None) == (variant_id or None)


class Cart(BaseModel):
    """Shopping cart owned by a user or by a guest session"""
    id: str = Field(default_factory=new_id)
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    items: List[CartItem] = Field(default_factory=list)
    coupon_codes: List[AppliedCoupon] = Field(default_factory=list)
    gift_card: Optional[AppliedGiftCard] = None
    totals: CartTotals = Field(default_factory=CartTotals)
    currency: str = Field(default_factory=lambda: Config.CURRENCY)
    notes: Optional[str] = None
    abandoned: bool = False
    abandoned_at: Optional[datetime] = None
    recovery_email_sent: bool = False
    recovery_email_sent_at: Optional[datetime] = None
    merged_from: List[str] = Field(default_factory=list)
    expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = Field(0, description="Optimistic concurrency token, owned by the repository")

    # --- derived values ------------------------------------------------------

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def unique_item_count(self) -> int:
        return len(self.items)

    @property
    def is_empty(self) -> bool:
        return not self.items

    @property
    def is_guest(self) -> bool:
        return self.user_id is None

    @property
    def total_weight(self) -> Decimal:
        return money_sum(item.weight * item.quantity for item in self.items)

    @property
    def total_savings(self) -> Decimal:
        return money_sum(item.savings for item in self.items) + self.totals.discount

    @property
    def earliest_reservation_expiry(self) -> Optional[datetime]:
        expiries = [
            item.reservation_expiry for item in self.items
            if item.has_reservation and item.reservation_expiry is not None
        ]
        return min(expiries) if expiries else None

    def get_item(self, item_id: str) -> CartItem:
        for item in self.items:
            if item.id == item_id:
                return item
        raise ItemNotFoundError(item_id)

    def find_matching(self, product_id: str, variant_id: Optional[str] = None) -> Optional[CartItem]:
        for item in self.items:
            if item.matches(product_id, variant_id):
                return item
        return None

    def expired_reservations(self, now: datetime) -> List[CartItem]:
        return [item for item in self.items if item.reservation_expired(now)]

    # --- item mutations ------------------------------------------------------

    def add_item(
        self,
        product: Product,
        quantity: int = 1,
        options: Optional[AddItemOptions] = None,
        now: Optional[datetime] = None
    ) -> CartItem:
        """
        Add `quantity` of a product (or one of its variants) to the cart.

        An existing line for the same product and variant has its quantity
        summed and its price refreshed; otherwise a new line is appended with
        the current price as its snapshot.

        Raises:
            ValidationError: quantity is not positive
            ProductUnavailableError: product not published, variant missing or inactive
            LimitExceededError: resulting line quantity is over the per-item cap
        """
        options = options or AddItemOptions()
        now = now or utcnow()

        if quantity <= 0:
            raise ValidationError("Quantity must be greater than 0")
        if not product.is_published:
            raise ProductUnavailableError(product.id)

        price = product.base_price
        compare_price = product.compare_price
        if options.variant_id:
            variant = product.get_variant(options.variant_id)
            if variant is None:
                raise ProductUnavailableError(product.id, "Variant not found")
            if not variant.is_active:
                raise ProductUnavailableError(product.id, "Variant is not available")
            price = variant.price
            compare_price = variant.compare_price or product.compare_price

        item = self.find_matching(product.id, options.variant_id)
        new_quantity = quantity + (item.quantity if item else 0)
        if new_quantity > Config.MAX_QUANTITY_PER_ITEM:
            raise LimitExceededError(
                f"Quantity {new_quantity} exceeds maximum {Config.MAX_QUANTITY_PER_ITEM}"
            )

        if item is not None:
            item.quantity = new_quantity
            item.price = price
            item.weight = product.weight
            item.metadata.last_updated = now
        else:
            item = CartItem(
                product_id=product.id,
                variant_id=options.variant_id,
                quantity=quantity,
                price=price,
                compare_price=compare_price,
                weight=product.weight,
                customization=options.customization,
                gift=options.gift,
                metadata=ItemMetadata(
                    added_from=options.added_from,
                    added_at=now,
                    last_updated=now,
                    price_at_time_of_adding=price
                )
            )
            self.items.append(item)

        self.touch(now)
        self.recompute_totals()
        return item

    def remove_item(
        self,
        item_id: str,
        stock: Optional[StockHolds] = None,
        now: Optional[datetime] = None
    ) -> CartItem:
        """
        Remove a line. A held reservation is released through `stock` before
        the line disappears; if the release fails the cart is unchanged.
        """
        item = self.get_item(item_id)

        if item.has_reservation:
            if stock is None:
                raise ValidationError("Item holds a stock reservation; a stock ledger is required")
            stock.release_stock([item.stock_item(item.reserved_quantity)])

        self.items.remove(item)
        self.touch(now or utcnow())
        self.recompute_totals()
        return item

    def update_item_quantity(
        self,
        item_id: str,
        quantity: int,
        stock: Optional[StockHolds] = None,
        now: Optional[datetime] = None
    ) -> Optional[CartItem]:
        """
        Set a line's quantity; zero or less removes it (returns None).

        When the line holds a reservation the hold follows the change: added
        units are held too, and a decrease gives back whatever the hold has
        beyond the new quantity. A decrease never needs stock. A failed stock
        call leaves the quantity as it was.
        """
        if quantity <= 0:
            self.remove_item(item_id, stock=stock, now=now)
            return None

        if quantity > Config.MAX_QUANTITY_PER_ITEM:
            raise LimitExceededError(
                f"Quantity {quantity} exceeds maximum {Config.MAX_QUANTITY_PER_ITEM}"
            )

        item = self.get_item(item_id)
        now = now or utcnow()

        if item.has_reservation:
            if stock is None:
                raise ValidationError("Item holds a stock reservation; a stock ledger is required")
            if quantity > item.quantity:
                added = quantity - item.quantity
                stock.reserve_stock([item.stock_item(added)])
                item.reserved_quantity += added
            elif item.reserved_quantity > quantity:
                stock.release_stock([item.stock_item(item.reserved_quantity - quantity)])
                item.reserved_quantity = quantity

        item.quantity = quantity
        item.metadata.last_updated = now
        self.touch(now)
        self.recompute_totals()
        return item

    def clear(self, now: Optional[datetime] = None) -> List[CartItem]:
        """
        Empty the cart (items, coupons, gift card). Returns the removed lines;
        releasing or committing their holds is the caller's decision.
        """
        removed = list(self.items)
        self.items = []
        self.coupon_codes = []
        self.gift_card = None
        self.touch(now or utcnow())
        self.recompute_totals()
        return removed

    def discard_items(self, item_ids: Iterable[str], now: Optional[datetime] = None) -> List[CartItem]:
        """
        Drop lines without counting it as shopper activity (validation and
        sweeps). Holds must already have been dealt with by the caller.
        """
        doomed = set(item_ids)
        removed = [item for item in self.items if item.id in doomed]
        self.items = [item for item in self.items if item.id not in doomed]
        self.refresh_expiry(now or utcnow())
        self.recompute_totals()
        return removed

    def merge(self, other: Optional["Cart"], now: Optional[datetime] = None) -> bool:
        """
        Absorb another cart's lines. Matching lines sum their quantities and
        take the incoming price; holds travel with their lines. Returns False
        for a no-op (no cart, or the same cart).
        """
        if other is None or other.id == self.id:
            return False

        for incoming in other.items:
            existing = self.find_matching(incoming.product_id, incoming.variant_id)
            if existing is None:
                self.items.append(incoming.model_copy(deep=True))
                continue

            existing.quantity += incoming.quantity
            existing.price = incoming.price
            if incoming.has_reservation:
                # Earliest expiry wins so the sweep never leaves a hold behind
                expiries = [incoming.reservation_expiry]
                if existing.has_reservation:
                    expiries.append(existing.reservation_expiry)
                expiries = [expiry for expiry in expiries if expiry is not None]
                existing.record_reservation(
                    incoming.reserved_quantity,
                    min(expiries) if expiries else None,
                    incoming.reservation_id
                )

        self.merged_from.append(other.id)
        self.touch(now or utcnow())
        self.recompute_totals()
        return True

    # --- discounts -----------------------------------------------------------

    def apply_coupon(self, coupon: CouponDefinition, now: Optional[datetime] = None) -> AppliedCoupon:
        if any(applied.code == coupon.code for applied in self.coupon_codes):
            raise ValidationError("Coupon already applied")

        now = now or utcnow()
        applied = AppliedCoupon(
            code=coupon.code,
            discount=coupon.discount,
            type=coupon.type,
            applied_at=now
        )
        self.coupon_codes.append(applied)
        self.touch(now)
        self.recompute_totals()
        return applied

    def remove_coupon(self, code: str, now: Optional[datetime] = None) -> AppliedCoupon:
        code = code.strip().upper()
        for applied in self.coupon_codes:
            if applied.code == code:
                self.coupon_codes.remove(applied)
                self.touch(now or utcnow())
                self.recompute_totals()
                return applied
        raise NotFoundError(f"Coupon not found: {code}")

    def apply_gift_card(self, code: str, amount: Decimal, now: Optional[datetime] = None) -> AppliedGiftCard:
        if amount <= ZERO:
            raise ValidationError("Gift card has no balance")

        now = now or utcnow()
        self.gift_card = AppliedGiftCard(code=code, amount=quantize(amount), applied_at=now)
        self.touch(now)
        self.recompute_totals()
        return self.gift_card

    def remove_gift_card(self, now: Optional[datetime] = None) -> None:
        if self.gift_card is None:
            raise NotFoundError("No gift card applied")
        self.gift_card = None
        self.touch(now or utcnow())
        self.recompute_totals()

    # --- totals --------------------------------------------------------------

    def recompute_totals(self) -> CartTotals:
        """Derive subtotal, discount, tax, shipping and total from current state"""
        subtotal = money_sum(item.subtotal for item in self.items)
        discount = money_sum(item.discount_amount for item in self.items)

        for coupon in self.coupon_codes:
            if coupon.type == DiscountType.PERCENTAGE:
                discount += percent_of(subtotal, coupon.discount)
            else:
                discount += coupon.discount

        if self.gift_card is not None:
            discount += self.gift_card.amount

        subtotal = quantize(subtotal)
        discount = quantize(discount)
        tax = calculate_tax(subtotal - discount)
        shipping = calculate_shipping(subtotal, self.total_weight, item_count=self.item_count)

        self.totals = CartTotals(
            subtotal=subtotal,
            discount=discount,
            tax=tax,
            shipping=shipping,
            total=quantize(clamp_non_negative(subtotal - discount + tax + shipping))
        )
        return self.totals

    # --- lifecycle -----------------------------------------------------------

    def touch(self, now: datetime) -> None:
        """Record activity: any mutation makes an abandoned cart active again"""
        self.updated_at = now
        self.abandoned = False
        self.abandoned_at = None
        self.refresh_expiry(now)

    def refresh_expiry(self, now: datetime) -> None:
        """Empty carts live a day, guest carts a month, user carts with items forever"""
        if self.is_empty and not self.abandoned:
            self.expires_at = now + timedelta(seconds=Config.EMPTY_CART_TTL_SECONDS)
        elif self.is_guest:
            self.expires_at = now + timedelta(seconds=Config.GUEST_CART_TTL_SECONDS)
        else:
            self.expires_at = None

    def check_abandonment(self, now: Optional[datetime] = None, inactivity: Optional[timedelta] = None) -> bool:
        """Flag a non-empty idle cart as abandoned; False if nothing changed"""
        now = now or utcnow()
        inactivity = inactivity or timedelta(minutes=Config.ABANDONMENT_MINUTES)

        if self.abandoned or self.is_empty:
            return False
        if now - self.updated_at <= inactivity:
            return False

        self.abandoned = True
        self.abandoned_at = now
        self.refresh_expiry(now)
        return True

    def recover(self, user_id: Optional[str] = None, now: Optional[datetime] = None) -> None:
        if user_id:
            self.assign_owner(user_id)
        self.touch(now or utcnow())

    def assign_owner(self, user_id: str) -> None:
        """Hand a guest cart to a user; the session identity is dropped"""
        self.user_id = user_id
        self.session_id = None
