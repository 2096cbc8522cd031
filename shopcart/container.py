"""
Service wiring. Everything is built from one RedisClient so tests can hand
in a fake one.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from shopcart.cache import CartCache, RedisCartCache
from shopcart.cart_service import CartService
from shopcart.catalog import ProductCatalog
from shopcart.checkout_service import CheckoutService
from shopcart.discounts import DiscountBook
from shopcart.guest_service import GuestService
from shopcart.models import utcnow
from shopcart.redis_client import RedisClient
from shopcart.repositories import CartRepository, GuestSessionRepository, SavedCartRepository
from shopcart.saved_cart_service import SavedCartService
from shopcart.stock_service import LowStockNotifier, StockService


@dataclass
class Services:
    redis: RedisClient
    catalog: ProductCatalog
    discounts: DiscountBook
    stock: StockService
    carts: CartRepository
    cart_service: CartService
    checkout: CheckoutService
    guests: GuestService
    saved_carts: SavedCartService


def build_services(
    redis: Optional[RedisClient] = None,
    cache: Optional[CartCache] = None,
    low_stock_notifier: Optional[LowStockNotifier] = None,
    clock: Callable[[], datetime] = utcnow
) -> Services:
    redis = redis or RedisClient()
    catalog = ProductCatalog(redis)
    discounts = DiscountBook(redis)
    stock = StockService(redis, low_stock_notifier=low_stock_notifier, clock=clock)
    carts = CartRepository(redis)

    cart_service = CartService(
        carts=carts,
        stock=stock,
        catalog=catalog,
        discounts=discounts,
        cache=cache or RedisCartCache(redis),
        clock=clock
    )

    return Services(
        redis=redis,
        catalog=catalog,
        discounts=discounts,
        stock=stock,
        carts=carts,
        cart_service=cart_service,
        checkout=CheckoutService(cart_service, stock, clock=clock),
        guests=GuestService(GuestSessionRepository(redis), cart_service, clock=clock),
        saved_carts=SavedCartService(SavedCartRepository(redis), cart_service, catalog, clock=clock)
    )
