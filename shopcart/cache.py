"""
Short-lived read cache for populated carts.

The cache only saves product-population reads. It is never a source of
truth: the cart service checks the stored version on every hit and
invalidates synchronously after every mutation.
"""
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

from shopcart.config import Config
from shopcart.redis_client import RedisClient


class CartCache(ABC):
    """Cache interface; values are serialized strings"""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...


class MemoryCartCache(CartCache):
    """Per-process cache; fine for a single instance"""

    def __init__(self, ttl_seconds: Optional[int] = None, timer: Callable[[], float] = time.monotonic):
        self.ttl_seconds = Config.CART_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self.timer = timer
        self._entries: Dict[str, Tuple[float, str]] = {}

    def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires, value = entry
        if self.timer() >= expires:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: str) -> None:
        self._entries[key] = (self.timer() + self.ttl_seconds, value)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)


class RedisCartCache(CartCache):
    """Shared cache for horizontally scaled deployments"""

    def __init__(self, redis: RedisClient, ttl_seconds: Optional[int] = None):
        self.redis = redis
        self.ttl_seconds = Config.CART_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds

    def _get_cache_key(self, key: str) -> str:
        return f"cart_cache:{key}"

    def get(self, key: str) -> Optional[str]:
        return self.redis.get(self._get_cache_key(key))

    def set(self, key: str, value: str) -> None:
        self.redis.set(self._get_cache_key(key), value, ex=self.ttl_seconds)

    def delete(self, key: str) -> None:
        self.redis.delete(self._get_cache_key(key))
