"""
Saved carts: named snapshots of a user's cart, reusable later, and
replenishment templates that re-add their lines on a schedule.
"""
import calendar
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from shopcart.cart import new_id
from shopcart.cart_service import CartService, CartView
from shopcart.catalog import ProductCatalog
from shopcart.exceptions import (
    CartException,
    InsufficientStockError,
    LimitExceededError,
    NotFoundError,
    ProductUnavailableError,
    ValidationError,
)
from shopcart.log import hash_identifier
from shopcart.models import (
    AddedFrom,
    AddItemOptions,
    CartIdentifier,
    PriceChangeReport,
    ReplenishFrequency,
    SaveCartOptions,
    SavedCart,
    SavedCartItem,
    SavedCartPurpose,
    TemplateOptions,
    utcnow,
)
from shopcart.money import ZERO, money_sum, quantize
from shopcart.repositories import SavedCartRepository

logger = logging.getLogger(__name__)

# Lines that cannot be re-added are skipped rather than failing the whole activation
SKIPPABLE_ERRORS = (NotFoundError, ProductUnavailableError, InsufficientStockError, LimitExceededError)


def add_months(date: datetime, months: int) -> datetime:
    """Same day `months` later, clamped to the end of shorter months"""
    month_index = date.month - 1 + months
    year = date.year + month_index // 12
    month = month_index % 12 + 1
    day = min(date.day, calendar.monthrange(year, month)[1])
    return date.replace(year=year, month=month, day=day)


def next_replenish_date(date: datetime, frequency: ReplenishFrequency) -> datetime:
    if frequency == ReplenishFrequency.WEEKLY:
        return date + timedelta(weeks=1)
    if frequency == ReplenishFrequency.BIWEEKLY:
        return date + timedelta(weeks=2)
    if frequency == ReplenishFrequency.MONTHLY:
        return add_months(date, 1)
    return add_months(date, 3)


class SavedCartService:
    """Service for saved carts and cart templates"""

    def __init__(
        self,
        saved_carts: SavedCartRepository,
        cart_service: CartService,
        catalog: ProductCatalog,
        clock: Callable[[], datetime] = utcnow
    ):
        self.saved_carts = saved_carts
        self.cart_service = cart_service
        self.catalog = catalog
        self.clock = clock

    def save_cart(self, user_id: str, options: Optional[SaveCartOptions] = None) -> SavedCart:
        """Snapshot the user's current cart under a name"""
        options = options or SaveCartOptions()
        identifier = CartIdentifier(user_id=user_id)
        cart = self.cart_service.get_cart(identifier).cart

        if cart.is_empty:
            raise ValidationError("Cannot save an empty cart")

        now = self.clock()
        saved_cart = SavedCart(
            id=new_id(),
            user_id=user_id,
            name=options.name or f"Saved Cart {now:%Y-%m-%d}",
            description=options.description,
            items=[
                SavedCartItem(
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    quantity=item.quantity,
                    saved_price=item.price,
                    current_price=item.price
                )
                for item in cart.items
            ],
            purpose=options.purpose,
            event_date=options.event_date,
            reminder_enabled=options.reminder_enabled,
            reminder_date=options.reminder_date,
            tags=options.tags,
            total_items_when_saved=cart.item_count,
            total_price_when_saved=cart.totals.total,
            created_at=now
        )
        self.saved_carts.save(saved_cart)

        if options.clear_cart:
            self.cart_service.clear_cart(identifier)

        logger.info(f"Saved cart {saved_cart.id} for {hash_identifier(user_id)}")
        return saved_cart

    def update_prices(self, saved_cart: SavedCart) -> PriceChangeReport:
        """
        Compare saved prices with the live catalog. Lines whose product has
        gone keep their last known price. The saved cart is updated in
        memory only.
        """
        for item in saved_cart.items:
            product = self.catalog.find_by_id(item.product_id)
            if product is None:
                continue

            current_price = product.base_price
            if item.variant_id:
                variant = product.get_variant(item.variant_id)
                if variant is None:
                    continue
                current_price = variant.price

            change = current_price - item.saved_price
            item.current_price = current_price
            item.price_changed = change != ZERO
            item.price_change_amount = change
            item.price_change_percent = (
                quantize(change / item.saved_price * 100) if item.saved_price else ZERO
            )

        return PriceChangeReport(
            has_changes=any(item.price_changed for item in saved_cart.items),
            total_price_change=quantize(money_sum(
                item.price_change_amount * item.quantity for item in saved_cart.items
            )),
            items=saved_cart.items
        )

    def get_saved_carts(self, user_id: str) -> List[Tuple[SavedCart, PriceChangeReport]]:
        """All of a user's saved carts, newest first, each with its price report"""
        return [(saved_cart, self.update_prices(saved_cart)) for saved_cart in self.saved_carts.list_for_user(user_id)]

    def _get_owned(self, saved_cart_id: str, user_id: str) -> SavedCart:
        saved_cart = self.saved_carts.get(saved_cart_id)
        if saved_cart is None or saved_cart.user_id != user_id:
            raise NotFoundError(f"Saved cart not found: {saved_cart_id}")
        return saved_cart

    def activate_saved_cart(self, saved_cart_id: str, user_id: str, merge: bool = True) -> CartView:
        """
        Put a saved cart's lines back into the user's live cart, through the
        normal add-to-cart path. Without `merge` the live cart is emptied first.
        """
        saved_cart = self._get_owned(saved_cart_id, user_id)
        identifier = CartIdentifier(user_id=user_id)

        if not merge:
            self.cart_service.clear_cart(identifier)

        for item in saved_cart.items:
            try:
                self.cart_service.add_to_cart(
                    identifier,
                    item.product_id,
                    item.quantity,
                    AddItemOptions(variant_id=item.variant_id, added_from=AddedFrom.SAVED_CART)
                )
            except SKIPPABLE_ERRORS as e:
                logger.warning(f"Skipped {item.product_id} while activating saved cart {saved_cart.id}: {e}")

        saved_cart.last_activated = self.clock()
        saved_cart.activation_count += 1
        self.saved_carts.save(saved_cart)

        return self.cart_service.get_cart(identifier)

    def delete_saved_cart(self, saved_cart_id: str, user_id: str) -> None:
        saved_cart = self._get_owned(saved_cart_id, user_id)
        self.saved_carts.delete(saved_cart)

    def create_cart_template(self, user_id: str, options: TemplateOptions) -> SavedCart:
        """Save the current cart as a recurring template, optionally auto-replenished"""
        template = self.save_cart(user_id, SaveCartOptions(
            name=options.name,
            description=options.description,
            purpose=SavedCartPurpose.RECURRING
        ))

        template.is_template = True
        template.auto_replenish = options.auto_replenish.model_copy()
        replenish = template.auto_replenish
        if replenish.enabled and replenish.next_date is None:
            replenish.next_date = next_replenish_date(self.clock(), replenish.frequency)

        return self.saved_carts.save(template)

    def process_auto_replenish(self, now: Optional[datetime] = None) -> int:
        """Activate every template whose replenish date has come; returns how many ran"""
        now = now or self.clock()
        processed = 0

        for template in self.saved_carts.due_templates(now):
            try:
                self.activate_saved_cart(template.id, template.user_id)
            except CartException:
                logger.error(f"Auto-replenish failed for template {template.id}", exc_info=True)
                continue

            template = self.saved_carts.get(template.id) or template
            replenish = template.auto_replenish
            next_date = replenish.next_date or now
            while next_date <= now:
                next_date = next_replenish_date(next_date, replenish.frequency)
            replenish.next_date = next_date
            self.saved_carts.save(template)
            processed += 1

        if processed:
            logger.info(f"Auto-replenished {processed} cart template(s)")
        return processed
