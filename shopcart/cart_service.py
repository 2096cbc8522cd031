"""
Cart service: the entry point for every cart operation.

Wraps the cart aggregate, the stock ledger, the product catalog and a short
read cache. Mutations read the cart fresh from the repository, collect any
stock-hold changes in a StockChangeSet and persist both in one atomic write;
a concurrent writer causes a re-read and retry.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple, TypeVar

from pydantic import BaseModel, Field

from shopcart.cache import CartCache
from shopcart.cart import Cart, CartItem
from shopcart.catalog import ProductCatalog
from shopcart.config import Config
from shopcart.discounts import DiscountBook
from shopcart.exceptions import (
    CartNotFoundError,
    ConcurrencyConflictError,
    InsufficientStockError,
    NotFoundError,
    ReservationExpiredError,
    ValidationError,
)
from shopcart.log import hash_identifier
from shopcart.models import (
    AddItemOptions,
    CartIdentifier,
    CartSummary,
    ItemChange,
    ItemRemoval,
    ProductSummary,
    ValidationReport,
    utcnow,
)
from shopcart.repositories import CartRepository
from shopcart.stock_service import StockChangeSet, StockService

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 3

T = TypeVar("T")


class CartView(BaseModel):
    """A cart with the product details needed to display it"""
    cart: Cart
    products: Dict[str, ProductSummary] = Field(default_factory=dict)
    changes: ValidationReport = Field(default_factory=ValidationReport)


class CartService:
    """Service for cart operations"""

    def __init__(
        self,
        carts: CartRepository,
        stock: StockService,
        catalog: ProductCatalog,
        discounts: DiscountBook,
        cache: CartCache,
        clock: Callable[[], datetime] = utcnow
    ):
        self.carts = carts
        self.stock = stock
        self.catalog = catalog
        self.discounts = discounts
        self.cache = cache
        self.clock = clock

    # --- helpers -------------------------------------------------------------

    def _reservation_expiry(self, now: datetime) -> datetime:
        return now + timedelta(seconds=Config.RESERVATION_TTL_SECONDS)

    def _log_id(self, identifier: CartIdentifier) -> str:
        return hash_identifier(identifier.user_id or identifier.session_id)

    def invalidate_cache(self, identifier: CartIdentifier) -> None:
        self.cache.delete(identifier.cache_key)

    def _invalidate_for(self, cart: Cart) -> None:
        """Drop cached views under every identity the cart is known by"""
        for owner in (cart.user_id, cart.session_id):
            if owner:
                self.cache.delete(f"cart_{owner}")

    def find_or_create(self, identifier: CartIdentifier) -> Cart:
        cart = self.carts.find(identifier)
        if cart is not None:
            return cart

        now = self.clock()
        cart = Cart(
            user_id=identifier.user_id,
            session_id=None if identifier.user_id else identifier.session_id,
            created_at=now,
            updated_at=now
        )
        cart.refresh_expiry(now)
        cart.recompute_totals()
        logger.info(f"Created cart for {self._log_id(identifier)}")
        return self.carts.save(cart)

    def populate(self, cart: Cart) -> Dict[str, ProductSummary]:
        products = {}
        for item in cart.items:
            if item.product_id in products:
                continue
            product = self.catalog.find_by_id(item.product_id)
            if product is not None:
                products[product.id] = ProductSummary.from_product(product)
        return products

    def _mutate(
        self,
        identifier: CartIdentifier,
        mutation: Callable[[Cart, StockChangeSet, datetime], T]
    ) -> Tuple[Cart, T]:
        """
        Read the cart, apply `mutation`, then write the cart and its stock
        changes atomically. Retries on a concurrent write; the last attempt's
        conflict propagates.
        """
        for _ in range(MAX_WRITE_ATTEMPTS - 1):
            try:
                return self._mutate_once(identifier, mutation)
            except ConcurrencyConflictError:
                logger.info(f"Retrying write to cart of {self._log_id(identifier)} after a conflict")
        return self._mutate_once(identifier, mutation)

    def _mutate_once(
        self,
        identifier: CartIdentifier,
        mutation: Callable[[Cart, StockChangeSet, datetime], T]
    ) -> Tuple[Cart, T]:
        cart = self.find_or_create(identifier)
        changes = StockChangeSet()
        result = mutation(cart, changes, self.clock())
        try:
            self.carts.save(cart, stock_changes=changes)
        finally:
            self.invalidate_cache(identifier)
        return cart, result

    def _view(self, cart: Cart, changes: Optional[ValidationReport] = None) -> CartView:
        return CartView(cart=cart, products=self.populate(cart), changes=changes or ValidationReport())

    # --- reads ---------------------------------------------------------------

    def _load_populated(self, identifier: CartIdentifier) -> Tuple[Cart, Dict[str, ProductSummary]]:
        key = identifier.cache_key
        cached = self.cache.get(key)
        if cached is not None:
            view = CartView.model_validate_json(cached)
            # Only trust the cache while nobody has written the cart since
            if self.carts.get_version(view.cart.id) == view.cart.version:
                return view.cart, view.products
            self.cache.delete(key)

        cart = self.find_or_create(identifier)
        products = self.populate(cart)
        self.cache.set(key, CartView(cart=cart, products=products).model_dump_json())
        return cart, products

    def get_cart(self, identifier: CartIdentifier) -> CartView:
        """
        Return the shopper's cart, creating it on first use.

        Validation always runs, cache hit or not; whatever it corrected is
        reported in the view's `changes`.
        """
        for _ in range(MAX_WRITE_ATTEMPTS - 1):
            try:
                return self._validated_view(identifier)
            except ConcurrencyConflictError:
                self.invalidate_cache(identifier)
        return self._validated_view(identifier)

    def _validated_view(self, identifier: CartIdentifier) -> CartView:
        cart, products = self._load_populated(identifier)
        report = self.validate_cart_items(cart)
        if report.changed:
            self.invalidate_cache(identifier)
            products = self.populate(cart)
        return CartView(cart=cart, products=products, changes=report)

    def validate_cart_items(self, cart: Cart) -> ValidationReport:
        """
        Reconcile every line with the live catalog and stock.

        Lines whose product is gone or unpublished, or whose variant is gone
        or inactive, are removed. Drifted prices are updated. Lines asking for
        more than can be supplied are clamped, or removed when nothing is
        left. Never raises for a broken line; the returned report lists every
        change. The cart is written only when something changed.
        """
        now = self.clock()
        report = ValidationReport()
        removed: List[CartItem] = []

        for item in cart.items:
            product = self.catalog.find_by_id(item.product_id)
            if product is None or not product.is_published:
                removed.append(item)
                report.removals.append(ItemRemoval(
                    item_id=item.id,
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    reason="product_unavailable"
                ))
                continue

            current_price = product.base_price
            if item.variant_id:
                variant = product.get_variant(item.variant_id)
                if variant is None or not variant.is_active:
                    removed.append(item)
                    report.removals.append(ItemRemoval(
                        item_id=item.id,
                        product_id=item.product_id,
                        variant_id=item.variant_id,
                        reason="variant_unavailable"
                    ))
                    continue
                current_price = variant.price

            if item.price != current_price:
                report.updates.append(ItemChange(
                    item_id=item.id,
                    type="price",
                    old_price=item.price,
                    new_price=current_price
                ))
                item.price = current_price
                item.metadata.price_changed = True
                item.metadata.last_price_update = now

            # The line's own hold is already out of `available`
            unreserved = item.quantity - item.reserved_quantity
            if unreserved <= 0:
                continue
            try:
                availability = self.stock.check_availability(item.product_id, unreserved, item.variant_id)
            except NotFoundError:
                removed.append(item)
                report.removals.append(ItemRemoval(
                    item_id=item.id,
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    reason="product_unavailable"
                ))
                continue

            if availability.available or availability.allow_backorder:
                continue

            supply = item.reserved_quantity + (availability.in_stock or 0)
            if supply > 0:
                report.updates.append(ItemChange(
                    item_id=item.id,
                    type="quantity",
                    old_quantity=item.quantity,
                    new_quantity=supply
                ))
                item.quantity = supply
            else:
                removed.append(item)
                report.removals.append(ItemRemoval(
                    item_id=item.id,
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    reason="out_of_stock"
                ))

        if not report.changed:
            return report

        changes = StockChangeSet()
        changes.release_stock([item.stock_item(item.reserved_quantity) for item in removed if item.has_reservation])
        cart.discard_items([item.id for item in removed], now)
        cart.recompute_totals()
        self.carts.save(cart, stock_changes=changes)
        self._invalidate_for(cart)

        logger.info(
            f"Validated cart {cart.id}: {len(report.updates)} update(s), {len(report.removals)} removal(s)"
        )
        return report

    # --- item mutations ------------------------------------------------------

    def _ensure_available(self, product_id: str, quantity: int, variant_id: Optional[str]) -> None:
        if quantity <= 0:
            return
        availability = self.stock.check_availability(product_id, quantity, variant_id)
        if not availability.available:
            raise InsufficientStockError(
                product_id=product_id,
                requested=quantity,
                in_stock=availability.in_stock or 0,
                variant_id=variant_id
            )

    def add_to_cart(
        self,
        identifier: CartIdentifier,
        product_id: str,
        quantity: int = 1,
        options: Optional[AddItemOptions] = None
    ) -> CartView:
        """
        Add a product to the cart. With options.reserve_stock the added
        quantity is also held for RESERVATION_TTL_SECONDS, in the same write.

        Raises:
            NotFoundError, ProductUnavailableError, InsufficientStockError,
            ValidationError, LimitExceededError, ConcurrencyConflictError
        """
        options = options or AddItemOptions()
        if quantity <= 0:
            raise ValidationError("Quantity must be greater than 0")

        product = self.catalog.find_by_id(product_id)
        if product is None:
            raise NotFoundError(f"Product {product_id} not found")

        def mutation(cart: Cart, changes: StockChangeSet, now: datetime) -> CartItem:
            existing = cart.find_matching(product_id, options.variant_id)
            unreserved = existing.quantity - existing.reserved_quantity if existing else 0
            self._ensure_available(product_id, unreserved + quantity, options.variant_id)

            item = cart.add_item(product, quantity, options, now)
            if options.reserve_stock:
                changes.reserve_stock([item.stock_item(quantity)])
                item.record_reservation(quantity, self._reservation_expiry(now))
            return item

        cart, _ = self._mutate(identifier, mutation)
        logger.info(f"Added {quantity} x {product_id} to cart {cart.id}")
        return self._view(cart)

    def remove_from_cart(self, identifier: CartIdentifier, item_id: str) -> CartView:
        """Remove a line; its hold, if any, is released in the same write"""
        def mutation(cart: Cart, changes: StockChangeSet, now: datetime) -> CartItem:
            return cart.remove_item(item_id, stock=changes, now=now)

        cart, _ = self._mutate(identifier, mutation)
        return self._view(cart)

    def update_cart_item_quantity(self, identifier: CartIdentifier, item_id: str, quantity: int) -> CartView:
        """
        Change a line's quantity (zero removes it). A held line grows or
        shrinks its hold in the same write; if stock cannot cover the growth
        nothing is written. Lowering a quantity always succeeds.
        """
        def mutation(cart: Cart, changes: StockChangeSet, now: datetime) -> Optional[CartItem]:
            item = cart.get_item(item_id)
            if quantity > item.quantity:
                self._ensure_available(item.product_id, quantity - item.reserved_quantity, item.variant_id)
            return cart.update_item_quantity(item_id, quantity, stock=changes, now=now)

        cart, _ = self._mutate(identifier, mutation)
        return self._view(cart)

    def clear_cart(self, identifier: CartIdentifier) -> CartView:
        """Empty the cart and give back every hold"""
        def mutation(cart: Cart, changes: StockChangeSet, now: datetime) -> List[CartItem]:
            removed = cart.clear(now)
            changes.release_stock([item.stock_item(item.reserved_quantity) for item in removed if item.has_reservation])
            return removed

        cart, _ = self._mutate(identifier, mutation)
        return self._view(cart)

    def extend_reservation(self, identifier: CartIdentifier, item_id: str) -> CartView:
        """
        Push a live hold's expiry out by another reservation window.

        Raises:
            ValidationError: the line holds no stock
            ReservationExpiredError: the hold has already lapsed
        """
        def mutation(cart: Cart, changes: StockChangeSet, now: datetime) -> CartItem:
            item = cart.get_item(item_id)
            if not item.has_reservation:
                raise ValidationError("Item has no stock reservation")
            if item.reservation_expired(now):
                raise ReservationExpiredError(item.id)
            item.reservation_expiry = self._reservation_expiry(now)
            cart.touch(now)
            return item

        cart, _ = self._mutate(identifier, mutation)
        return self._view(cart)

    # --- discounts -----------------------------------------------------------

    def apply_coupon(self, identifier: CartIdentifier, coupon_code: str) -> CartView:
        def mutation(cart: Cart, changes: StockChangeSet, now: datetime):
            coupon = self.discounts.validate_coupon(coupon_code, cart.totals.subtotal, now)
            return cart.apply_coupon(coupon, now)

        cart, _ = self._mutate(identifier, mutation)
        return self._view(cart)

    def remove_coupon(self, identifier: CartIdentifier, coupon_code: str) -> CartView:
        def mutation(cart: Cart, changes: StockChangeSet, now: datetime):
            return cart.remove_coupon(coupon_code, now)

        cart, _ = self._mutate(identifier, mutation)
        return self._view(cart)

    def apply_gift_card(self, identifier: CartIdentifier, code: str) -> CartView:
        gift_card = self.discounts.get_gift_card(code)
        if gift_card is None:
            raise NotFoundError(f"Gift card not found: {code}")
        if not gift_card.active:
            raise ValidationError(f"Gift card is no longer active: {code}")

        def mutation(cart: Cart, changes: StockChangeSet, now: datetime):
            return cart.apply_gift_card(gift_card.code, gift_card.balance, now)

        cart, _ = self._mutate(identifier, mutation)
        return self._view(cart)

    def remove_gift_card(self, identifier: CartIdentifier) -> CartView:
        def mutation(cart: Cart, changes: StockChangeSet, now: datetime):
            cart.remove_gift_card(now)

        cart, _ = self._mutate(identifier, mutation)
        return self._view(cart)

    # --- identity ------------------------------------------------------------

    def merge_carts(self, user_id: str, session_id: str) -> Optional[Cart]:
        """
        Fold a guest session's cart into the user's cart at sign-in.

        No-op when the session cart is missing or empty. When the user has no
        cart yet the session cart is simply handed over.
        """
        now = self.clock()
        user_cart = self.carts.find_by_user(user_id)
        session_cart = self.carts.find_by_session(session_id)

        if session_cart is None or session_cart.is_empty:
            return user_cart

        if user_cart is None or user_cart.id == session_cart.id:
            session_cart.assign_owner(user_id)
            session_cart.touch(now)
            self.carts.save(session_cart, detach_sessions=[session_id])
            self.invalidate_cache(CartIdentifier(user_id=user_id))
            self.invalidate_cache(CartIdentifier(session_id=session_id))
            logger.info(f"Re-owned guest cart {session_cart.id}")
            return session_cart

        # The guest cart goes first so its holds exist in exactly one cart
        self.carts.delete(session_cart)
        for attempt in range(MAX_WRITE_ATTEMPTS):
            user_cart.merge(session_cart, now)
            try:
                self.carts.save(user_cart)
                break
            except ConcurrencyConflictError:
                if attempt == MAX_WRITE_ATTEMPTS - 1:
                    held = [item.stock_item(item.reserved_quantity) for item in session_cart.items if item.has_reservation]
                    if held:
                        self.stock.release_stock(held)
                    raise
                user_cart = self.carts.find_by_user(user_id) or self.find_or_create(CartIdentifier(user_id=user_id))

        self.invalidate_cache(CartIdentifier(user_id=user_id))
        self.invalidate_cache(CartIdentifier(session_id=session_id))
        logger.info(f"Merged guest cart {session_cart.id} into {user_cart.id}")
        return user_cart

    def recover_cart(self, cart_id: str, user_id: Optional[str] = None) -> Cart:
        """Bring an abandoned cart back (recovery-email link), optionally claiming it"""
        cart = self.carts.get(cart_id)
        if cart is None:
            raise CartNotFoundError(cart_id)

        previous_session = cart.session_id
        cart.recover(user_id, self.clock())
        detach = [previous_session] if previous_session and cart.session_id is None else []
        self.carts.save(cart, detach_sessions=detach)
        self._invalidate_for(cart)
        if previous_session:
            self.invalidate_cache(CartIdentifier(session_id=previous_session))
        return cart

    # --- summaries -----------------------------------------------------------

    def get_cart_summary(self, identifier: CartIdentifier) -> CartSummary:
        cart = self.get_cart(identifier).cart
        return CartSummary(
            item_count=cart.item_count,
            unique_item_count=cart.unique_item_count,
            totals=cart.totals,
            savings=cart.total_savings,
            applied_coupons=len(cart.coupon_codes),
            estimated_delivery=self.calculate_estimated_delivery()
        )

    def calculate_estimated_delivery(self, start: Optional[datetime] = None) -> datetime:
        """Start date plus DELIVERY_BUSINESS_DAYS, skipping weekends"""
        date = start or self.clock()
        days_added = 0
        while days_added < Config.DELIVERY_BUSINESS_DAYS:
            date += timedelta(days=1)
            if date.weekday() < 5:
                days_added += 1
        return date

    # --- sweeps --------------------------------------------------------------

    def cleanup_expired_reservations(self) -> int:
        """
        Release every hold past its expiry and clear it from its line.
        Returns the number of carts changed.
        """
        now = self.clock()
        changed = 0

        for cart_id in self.carts.ids_with_expired_reservations(now):
            for _ in range(MAX_WRITE_ATTEMPTS):
                cart = self.carts.get(cart_id)
                if cart is None:
                    break
                expired = cart.expired_reservations(now)
                if not expired:
                    break

                changes = StockChangeSet()
                changes.release_stock([item.stock_item(item.reserved_quantity) for item in expired])
                for item in expired:
                    item.clear_reservation()
                try:
                    self.carts.save(cart, stock_changes=changes)
                except ConcurrencyConflictError:
                    continue

                self._invalidate_for(cart)
                changed += 1
                break

        if changed:
            logger.info(f"Released expired stock reservations in {changed} cart(s)")
        return changed

    def cleanup_expired_carts(self) -> int:
        """Delete carts past their expiry; any holds they carry are released first"""
        now = self.clock()
        deleted = 0

        for cart_id in self.carts.ids_expired(now):
            cart = self.carts.get(cart_id)
            if cart is None or cart.expires_at is None or cart.expires_at > now:
                continue

            try:
                held = [item for item in cart.items if item.has_reservation]
                if held:
                    changes = StockChangeSet()
                    changes.release_stock([item.stock_item(item.reserved_quantity) for item in held])
                    for item in held:
                        item.clear_reservation()
                    self.carts.save(cart, stock_changes=changes)
                self.carts.delete(cart)
            except ConcurrencyConflictError:
                logger.info(f"Skipped expiring cart {cart_id}: it changed during cleanup")
                continue

            self._invalidate_for(cart)
            deleted += 1

        if deleted:
            logger.info(f"Cleaned up {deleted} expired cart(s)")
        return deleted

    def get_abandoned_carts(self, hours: Optional[float] = None) -> List[Cart]:
        """
        Flag carts idle for longer than `hours` (default ABANDONMENT_MINUTES)
        as abandoned and return them, for recovery workflows.
        """
        now = self.clock()
        inactivity = timedelta(hours=hours) if hours is not None else timedelta(minutes=Config.ABANDONMENT_MINUTES)
        abandoned = []

        for cart_id in self.carts.ids_idle_since(now - inactivity):
            cart = self.carts.get(cart_id)
            if cart is None or not cart.check_abandonment(now, inactivity):
                continue
            try:
                self.carts.save(cart)
            except ConcurrencyConflictError:
                continue
            self._invalidate_for(cart)
            abandoned.append(cart)

        if abandoned:
            logger.info(f"Marked {len(abandoned)} cart(s) as abandoned")
        return abandoned
