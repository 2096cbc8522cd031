"""
Product catalog backed by Redis.

The cart core only reads from it; save/delete exist for catalog tooling
and for seeding fixtures.
"""
from typing import Optional

from shopcart.models import Product
from shopcart.redis_client import RedisClient


class ProductCatalog:
    """Product lookups"""

    def __init__(self, redis: RedisClient):
        self.redis = redis

    def _get_product_key(self, product_id: str) -> str:
        return f"product:{product_id}"

    def find_by_id(self, product_id: str) -> Optional[Product]:
        """Fetch the live product, or None when it no longer exists"""
        raw = self.redis.get(self._get_product_key(product_id))
        if raw is None:
            return None
        return Product.model_validate_json(raw)

    def save(self, product: Product) -> Product:
        self.redis.set(self._get_product_key(product.id), product.model_dump_json())
        return product

    def delete(self, product_id: str) -> bool:
        return self.redis.delete(self._get_product_key(product_id)) > 0
