from datetime import datetime, timedelta, timezone
from decimal import Decimal

import fakeredis
import pytest

from shopcart.cache import MemoryCartCache
from shopcart.container import build_services
from shopcart.models import Product, ProductStatus, Variant
from shopcart.redis_client import RedisClient

# A Monday
START = datetime(2026, 10, 12, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
def fake_redis():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def redis_client(fake_redis):
    return RedisClient(client=fake_redis)


@pytest.fixture
def low_stock_alerts():
    return []


@pytest.fixture
def services(redis_client, clock, low_stock_alerts):
    return build_services(
        redis=redis_client,
        cache=MemoryCartCache(),
        low_stock_notifier=low_stock_alerts.append,
        clock=clock
    )


@pytest.fixture
def stock(services):
    return services.stock


@pytest.fixture
def cart_service(services):
    return services.cart_service


@pytest.fixture
def products():
    return {
        "widget": Product(id="widget", name="Widget", base_price=Decimal("10.00"), weight=Decimal("0.2")),
        "tee": Product(
            id="tee",
            name="T-Shirt",
            base_price=Decimal("20.00"),
            compare_price=Decimal("25.00"),
            weight=Decimal("0.3"),
            variants=[
                Variant(id="m", name="Medium", price=Decimal("22.00")),
                Variant(id="l", name="Large", price=Decimal("24.00")),
                Variant(id="xl", name="Extra Large", price=Decimal("26.00"), is_active=False),
            ]
        ),
        "lamp": Product(id="lamp", name="Lamp", base_price=Decimal("60.00"), weight=Decimal("3")),
        "draft": Product(id="draft", name="Draft", base_price=Decimal("5.00"), status=ProductStatus.DRAFT),
    }


@pytest.fixture
def seeded(services, products):
    """Catalog with stock: widget 10, tee/m 5, tee/l 5, lamp 3 (backorder), tee 0"""
    for product in products.values():
        services.catalog.save(product)

    services.stock.create_record("widget", 10, low_stock_threshold=2)
    services.stock.create_record("tee", 0)
    services.stock.create_record("tee", 5, variant_id="m")
    services.stock.create_record("tee", 5, variant_id="l")
    services.stock.create_record("tee", 5, variant_id="xl")
    services.stock.create_record("lamp", 3, allow_backorder=True)
    services.stock.create_record("draft", 10)
    return services
