"""
Custom exceptions for the cart and stock-reservation core.
"""
from typing import Any, Optional


class CartException(Exception):
    """Base exception for cart and stock operations"""
    pass


class NotFoundError(CartException):
    """Raised when a product, variant, cart or item does not exist"""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class CartNotFoundError(NotFoundError):
    """Raised when a cart does not exist"""
    def __init__(self, cart_id: str):
        self.cart_id = cart_id
        super().__init__(f"Cart not found: {cart_id}")


class ItemNotFoundError(NotFoundError):
    """Raised when an item is not in the cart"""
    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Item not found in cart: {item_id}")


class ProductUnavailableError(CartException):
    """Raised when a product is not published or a variant is inactive"""
    def __init__(self, product_id: str, reason: str = "Product is not available"):
        self.product_id = product_id
        self.reason = reason
        super().__init__(f"{reason}: {product_id}")


class InsufficientStockError(CartException):
    """Raised when the requested quantity exceeds available stock"""
    def __init__(self, product_id: str, requested: int, in_stock: int, variant_id: Optional[str] = None):
        self.product_id = product_id
        self.variant_id = variant_id
        self.requested = requested
        self.in_stock = in_stock
        super().__init__(f"Only {in_stock} items available")


class ValidationError(CartException):
    """Raised when validation fails"""
    def __init__(self, message: str, changes: Optional[Any] = None):
        self.message = message
        self.changes = changes
        super().__init__(message)


class LimitExceededError(CartException):
    """Raised when cart limits are exceeded"""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ConcurrencyConflictError(CartException):
    """Raised when a cart was written by someone else since it was read; retry"""
    def __init__(self, cart_id: str, expected_version: int):
        self.cart_id = cart_id
        self.expected_version = expected_version
        super().__init__(f"Cart {cart_id} changed since version {expected_version}")


class ReservationExpiredError(CartException):
    """Raised when committing or extending a reservation past its expiry"""
    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Stock reservation expired for item: {item_id}")


class RedisConnectionError(CartException):
    """Raised when Redis connection fails"""
    pass
