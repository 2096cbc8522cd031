"""
Checkout service: turns a validated cart into an order.

Called by the order-placement flow once payment has succeeded. Held stock
becomes sold stock and the cart is emptied in one versioned write, so a
concurrent change to the cart aborts the order instead of racing it.
"""
import logging
import uuid
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from pydantic import BaseModel, Field

from shopcart.cart import CartItem
from shopcart.cart_service import CartService
from shopcart.exceptions import ConcurrencyConflictError, ReservationExpiredError, ValidationError
from shopcart.log import hash_identifier
from shopcart.models import CartIdentifier, CartTotals, CommitItem, utcnow
from shopcart.stock_service import StockChangeSet, StockService

logger = logging.getLogger(__name__)


class CheckoutResponse(BaseModel):
    order_id: str
    cart_id: str
    user_id: Optional[str] = None
    items: List[CartItem] = Field(default_factory=list)
    totals: CartTotals
    low_stock_products: List[str] = Field(default_factory=list)
    message: str


def commit_items(items: Sequence[CartItem]) -> List[CommitItem]:
    """Split each line into its held part and the part bought without a hold"""
    lines = []
    for item in items:
        held = min(item.reserved_quantity, item.quantity) if item.has_reservation else 0
        if held:
            lines.append(CommitItem(
                product_id=item.product_id,
                variant_id=item.variant_id,
                quantity=held,
                reserved=True
            ))
        if item.quantity > held:
            lines.append(CommitItem(
                product_id=item.product_id,
                variant_id=item.variant_id,
                quantity=item.quantity - held,
                reserved=False
            ))
    return lines


class CheckoutService:
    """Service for checkout operations"""

    def __init__(
        self,
        cart_service: CartService,
        stock: StockService,
        clock: Callable[[], datetime] = utcnow
    ):
        self.cart_service = cart_service
        self.stock = stock
        self.clock = clock

    def start_checkout(
        self,
        identifier: CartIdentifier,
        validate_pricing: bool = True
    ) -> CheckoutResponse:
        """
        Start checkout process:
        1. Get and validate cart contents
        2. Reject the order if validation changed the cart (with validate_pricing)
        3. Reject lapsed reservations
        4. Commit stock for every line and empty the cart, atomically

        Raises:
            ValidationError: empty cart, or the cart changed during validation
                (the ValidationReport is attached as `changes`)
            ReservationExpiredError: a line's hold has lapsed
            InsufficientStockError: an unheld line can no longer be supplied
            ConcurrencyConflictError: the cart was written after it was read;
                nothing was committed
        """
        view = self.cart_service.get_cart(identifier)
        cart = view.cart

        if cart.is_empty:
            raise ValidationError("Cannot checkout empty cart")

        if validate_pricing and view.changes.changed:
            raise ValidationError(
                "Cart changed since it was last viewed; review before checkout",
                changes=view.changes
            )

        now = self.clock()
        expired = cart.expired_reservations(now)
        if expired:
            raise ReservationExpiredError(expired[0].id)

        order_id = str(uuid.uuid4())
        ordered = [item.model_copy(deep=True) for item in cart.items]
        totals = cart.totals.model_copy()

        changes = StockChangeSet()
        changes.commit_stock(commit_items(ordered))
        cart.clear(now)

        try:
            self.cart_service.carts.save(cart, stock_changes=changes)
        except ConcurrencyConflictError:
            logger.warning(f"Checkout of cart {cart.id} lost a race with another write; nothing committed")
            raise
        finally:
            self.cart_service.invalidate_cache(identifier)

        low_stock = self.stock.notify_low_stock(changes.low_stock)

        owner = identifier.user_id or identifier.session_id
        logger.info(f"Order created: {order_id} for {hash_identifier(owner)}, total {totals.total}")

        return CheckoutResponse(
            order_id=order_id,
            cart_id=cart.id,
            user_id=cart.user_id,
            items=ordered,
            totals=totals,
            low_stock_products=[record.product_id for record in low_stock],
            message="Order placed successfully. Cart has been cleared."
        )
