"""
Pydantic models for products, stock, discounts, guest sessions and saved carts.

Cart and CartItem live in shopcart.cart because they carry behaviour.
"""
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Catalog -----------------------------------------------------------------

class ProductStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class Variant(BaseModel):
    """Product variant (size, colour, ...) with its own price"""
    id: str
    name: str = ""
    sku: Optional[str] = None
    price: Decimal
    compare_price: Optional[Decimal] = None
    is_active: bool = True


class Product(BaseModel):
    """Read-only product snapshot as served by the catalog"""
    id: str
    name: str
    slug: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    status: ProductStatus = ProductStatus.PUBLISHED
    base_price: Decimal
    compare_price: Optional[Decimal] = None
    weight: Decimal = Field(Decimal("0"), ge=0, description="Weight in kg")
    variants: List[Variant] = Field(default_factory=list)

    @property
    def is_published(self) -> bool:
        return self.status == ProductStatus.PUBLISHED

    def get_variant(self, variant_id: str) -> Optional[Variant]:
        for variant in self.variants:
            if variant.id == variant_id:
                return variant
        return None


class ProductSummary(BaseModel):
    """Fields attached to cart items when a cart is populated for display"""
    id: str
    name: str
    slug: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    base_price: Decimal
    compare_price: Optional[Decimal] = None
    status: ProductStatus

    @classmethod
    def from_product(cls, product: Product) -> "ProductSummary":
        return cls(
            id=product.id,
            name=product.name,
            slug=product.slug,
            images=product.images,
            base_price=product.base_price,
            compare_price=product.compare_price,
            status=product.status
        )


# --- Stock -------------------------------------------------------------------

class StockRecord(BaseModel):
    """On-hand, reserved and available counts for a product or variant"""
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = 0
    reserved: int = 0
    available: int = 0
    allow_backorder: bool = False
    track_inventory: bool = True
    low_stock_threshold: int = 0


class Availability(BaseModel):
    """Result of an availability check; in_stock is None when inventory is untracked"""
    available: bool
    in_stock: Optional[int] = None
    allow_backorder: bool = False


class StockItem(BaseModel):
    """One line of a reserve/release request"""
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(..., gt=0)


class CommitItem(StockItem):
    """One line of a commit; reserved=False means no hold exists and stock must be checked"""
    reserved: bool = True


class Reservation(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int
    reserved_at: datetime


class StockAdjustment(BaseModel):
    """Audit entry for a manual stock correction"""
    date: datetime
    type: Literal["addition", "deduction"]
    quantity: int
    reason: str
    previous_stock: int
    new_stock: int


# --- Discounts ---------------------------------------------------------------

class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class CouponDefinition(BaseModel):
    """A redeemable coupon as stored by the discount book"""
    code: str
    type: DiscountType
    discount: Decimal = Field(..., gt=0)
    active: bool = True
    min_subtotal: Optional[Decimal] = None
    expires_at: Optional[datetime] = None

    @field_validator("code")
    @classmethod
    def validate_code(cls, v: str) -> str:
        v = v.strip().upper()
        if not v.isalnum():
            raise ValueError("Invalid coupon code format")
        return v


class GiftCardBalance(BaseModel):
    code: str
    balance: Decimal = Field(..., ge=0)
    active: bool = True


class AppliedCoupon(BaseModel):
    code: str
    discount: Decimal
    type: DiscountType
    applied_at: datetime


class AppliedGiftCard(BaseModel):
    code: str
    amount: Decimal
    applied_at: datetime


class AppliedDiscount(BaseModel):
    """Item-level discount (promotion engine output)"""
    type: Literal["percentage", "fixed", "bogo", "bundle"]
    value: Decimal = Decimal("0")
    code: Optional[str] = None
    description: Optional[str] = None
    amount: Decimal = Decimal("0")


# --- Cart inputs and reports -------------------------------------------------

class CartTotals(BaseModel):
    subtotal: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    shipping: Decimal = Decimal("0")
    total: Decimal = Decimal("0")


class AddedFrom(str, Enum):
    PRODUCT_PAGE = "product_page"
    SEARCH = "search"
    RECOMMENDATIONS = "recommendations"
    WISHLIST = "wishlist"
    QUICK_VIEW = "quick_view"
    SAVED_CART = "saved_cart"


class GiftOptions(BaseModel):
    is_gift: bool = False
    message: Optional[str] = None
    recipient_name: Optional[str] = None
    recipient_email: Optional[str] = None


class AddItemOptions(BaseModel):
    """Every option add-to-cart understands; anything else is rejected"""
    model_config = ConfigDict(extra="forbid")

    variant_id: Optional[str] = None
    added_from: AddedFrom = AddedFrom.PRODUCT_PAGE
    customization: Dict[str, str] = Field(default_factory=dict)
    gift: Optional[GiftOptions] = None
    reserve_stock: bool = False


class CartIdentifier(BaseModel):
    """Who a cart belongs to: a signed-in user or a guest session"""
    user_id: Optional[str] = None
    session_id: Optional[str] = None

    @model_validator(mode="after")
    def require_identity(self) -> "CartIdentifier":
        if not self.user_id and not self.session_id:
            raise ValueError("Either user_id or session_id is required")
        return self

    @property
    def cache_key(self) -> str:
        return f"cart_{self.user_id or self.session_id}"


class ItemChange(BaseModel):
    """A correction made to a cart item during validation"""
    item_id: str
    type: Literal["price", "quantity"]
    old_price: Optional[Decimal] = None
    new_price: Optional[Decimal] = None
    old_quantity: Optional[int] = None
    new_quantity: Optional[int] = None


class ItemRemoval(BaseModel):
    item_id: str
    product_id: str
    variant_id: Optional[str] = None
    reason: Literal["product_unavailable", "variant_unavailable", "out_of_stock"]


class ValidationReport(BaseModel):
    """What validate_cart_items changed, for the caller to show the shopper"""
    updates: List[ItemChange] = Field(default_factory=list)
    removals: List[ItemRemoval] = Field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.updates or self.removals)


class CartSummary(BaseModel):
    item_count: int
    unique_item_count: int
    totals: CartTotals
    savings: Decimal
    applied_coupons: int
    estimated_delivery: datetime


# --- Guest sessions ----------------------------------------------------------

class GuestSession(BaseModel):
    session_id: str
    cart_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    referrer: Optional[str] = None
    landing_page: Optional[str] = None
    converted_to_user: Optional[str] = None
    conversion_date: Optional[datetime] = None
    last_activity: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)


class GuestMetadata(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    referrer: Optional[str] = None
    landing_page: Optional[str] = None


# --- Saved carts -------------------------------------------------------------

class SavedCartPurpose(str, Enum):
    PERSONAL = "personal"
    GIFT = "gift"
    BUSINESS = "business"
    EVENT = "event"
    RECURRING = "recurring"
    OTHER = "other"


class ReplenishFrequency(str, Enum):
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"


class AutoReplenish(BaseModel):
    enabled: bool = False
    frequency: ReplenishFrequency = ReplenishFrequency.MONTHLY
    next_date: Optional[datetime] = None


class SavedCartItem(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(..., ge=1)
    saved_price: Decimal
    current_price: Decimal
    price_changed: bool = False
    price_change_amount: Decimal = Decimal("0")
    price_change_percent: Decimal = Decimal("0")
    notes: Optional[str] = None


class SavedCart(BaseModel):
    """Point-in-time snapshot of a cart, optionally a replenishment template"""
    id: str
    user_id: str
    name: str = "Saved Cart"
    description: Optional[str] = None
    items: List[SavedCartItem] = Field(default_factory=list)
    purpose: SavedCartPurpose = SavedCartPurpose.PERSONAL
    event_date: Optional[datetime] = None
    reminder_enabled: bool = False
    reminder_date: Optional[datetime] = None
    is_template: bool = False
    tags: List[str] = Field(default_factory=list)
    total_items_when_saved: int = 0
    total_price_when_saved: Decimal = Decimal("0")
    last_activated: Optional[datetime] = None
    activation_count: int = 0
    auto_replenish: AutoReplenish = Field(default_factory=AutoReplenish)
    created_at: datetime = Field(default_factory=utcnow)


class SaveCartOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    description: Optional[str] = None
    purpose: SavedCartPurpose = SavedCartPurpose.PERSONAL
    event_date: Optional[datetime] = None
    reminder_enabled: bool = False
    reminder_date: Optional[datetime] = None
    tags: List[str] = Field(default_factory=list)
    clear_cart: bool = False


class TemplateOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    description: Optional[str] = None
    auto_replenish: AutoReplenish = Field(default_factory=AutoReplenish)


class PriceChangeReport(BaseModel):
    """Saved-cart price reconciliation result"""
    has_changes: bool
    total_price_change: Decimal
    items: List[SavedCartItem] = Field(default_factory=list)
