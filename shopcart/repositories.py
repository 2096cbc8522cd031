"""
Redis persistence for carts, guest sessions and saved carts.

Carts are stored as a hash {version, doc}. Writes go through a
compare-and-set script keyed on the version read, so two requests racing on
the same cart cannot silently overwrite each other: the loser gets
ConcurrencyConflictError and retries. The same script maintains the sweep
indexes (expiry, reservation expiry, last activity) and the owner pointers.
"""
import logging
from datetime import datetime
from typing import List, Optional, Sequence

from shopcart.atomic_scripts import AtomicScripts
from shopcart.cart import Cart
from shopcart.exceptions import ConcurrencyConflictError, InsufficientStockError, NotFoundError
from shopcart.models import CartIdentifier, GuestSession, SavedCart
from shopcart.redis_client import RedisClient
from shopcart.stock_service import StockChangeSet

logger = logging.getLogger(__name__)

EXPIRY_INDEX_KEY = "carts:expiry"
RESERVATION_INDEX_KEY = "carts:reservations"
ACTIVITY_INDEX_KEY = "carts:activity"
CART_INDEX_KEYS = (EXPIRY_INDEX_KEY, RESERVATION_INDEX_KEY, ACTIVITY_INDEX_KEY)

GUEST_SESSION_TTL_SECONDS = 30 * 24 * 60 * 60
REPLENISH_INDEX_KEY = "saved_carts:replenish"


def _score(value: Optional[datetime]) -> Optional[float]:
    return value.timestamp() if value is not None else None


class CartRepository:
    """Cart documents with optimistic concurrency"""

    def __init__(self, redis: RedisClient):
        self.redis = redis
        self.scripts = AtomicScripts(redis)

    def _get_cart_key(self, cart_id: str) -> str:
        return f"cart:{cart_id}"

    def _get_user_key(self, user_id: str) -> str:
        return f"cart_owner:user:{user_id}"

    def _get_session_key(self, session_id: str) -> str:
        return f"cart_owner:session:{session_id}"

    def _owner_keys(self, cart: Cart) -> List[str]:
        keys = []
        if cart.user_id:
            keys.append(self._get_user_key(cart.user_id))
        if cart.session_id:
            keys.append(self._get_session_key(cart.session_id))
        return keys

    def get(self, cart_id: str) -> Optional[Cart]:
        data = self.redis.hgetall(self._get_cart_key(cart_id))
        if not data or "doc" not in data:
            return None
        cart = Cart.model_validate_json(data["doc"])
        cart.version = int(data["version"])
        return cart

    def get_version(self, cart_id: str) -> int:
        """Current version of a stored cart; 0 when it does not exist"""
        version = self.redis.hget(self._get_cart_key(cart_id), "version")
        return int(version) if version is not None else 0

    def find_by_user(self, user_id: str) -> Optional[Cart]:
        cart_id = self.redis.get(self._get_user_key(user_id))
        return self.get(cart_id) if cart_id else None

    def find_by_session(self, session_id: str) -> Optional[Cart]:
        cart_id = self.redis.get(self._get_session_key(session_id))
        return self.get(cart_id) if cart_id else None

    def find(self, identifier: CartIdentifier) -> Optional[Cart]:
        if identifier.user_id:
            return self.find_by_user(identifier.user_id)
        return self.find_by_session(identifier.session_id)

    def save(
        self,
        cart: Cart,
        detach_sessions: Sequence[str] = (),
        stock_changes: Optional[StockChangeSet] = None
    ) -> Cart:
        """
        Write the cart, and apply its collected stock changes (holds taken or
        released, sales committed), if the cart is still at the version it
        was read at. Both happen or neither does.

        `detach_sessions` lists session ids whose owner pointer should stop
        pointing at this cart (guest cart re-owned by a user). Records that a
        sale left at or below their low-stock threshold are listed on
        `stock_changes.low_stock`.

        Raises:
            ConcurrencyConflictError: someone else wrote the cart first
            NotFoundError: an operation targets a product or variant with no stock record
            InsufficientStockError: a hold or sale exceeds available stock
        """
        changes = stock_changes.changes if stock_changes is not None else []
        scores = (
            _score(cart.expires_at),
            _score(cart.earliest_reservation_expiry),
            _score(cart.updated_at) if cart.items and not cart.abandoned else None,
        )
        reply = self.scripts.save_cart(
            cart_key=self._get_cart_key(cart.id),
            index_keys=CART_INDEX_KEYS,
            owner_keys=self._owner_keys(cart),
            detach_keys=[self._get_session_key(session_id) for session_id in detach_sessions],
            expected_version=cart.version,
            document=cart.model_dump_json(exclude={"version"}),
            cart_id=cart.id,
            scores=scores,
            stock_operations=stock_changes.operations if stock_changes is not None else ()
        )

        status = reply[0]
        if status == 0:
            logger.warning(f"Cart write conflict on {cart.id}: expected {cart.version}, found {reply[1]}")
            raise ConcurrencyConflictError(cart.id, cart.version)
        if status < 0:
            item, _ = changes[reply[1] - 1]
            if status == -1:
                if item.variant_id:
                    raise NotFoundError(f"No stock record for product {item.product_id} variant {item.variant_id}")
                raise NotFoundError(f"No stock record for product {item.product_id}")
            raise InsufficientStockError(
                product_id=item.product_id,
                requested=item.quantity,
                in_stock=reply[2],
                variant_id=item.variant_id
            )

        cart.version = reply[1]
        if stock_changes is not None:
            stock_changes.low_stock = [changes[index - 1][0] for index in reply[2:]]
        return cart

    def delete(self, cart: Cart, check_version: bool = True) -> None:
        reply = self.scripts.delete_cart(
            cart_key=self._get_cart_key(cart.id),
            index_keys=CART_INDEX_KEYS,
            owner_keys=self._owner_keys(cart),
            cart_id=cart.id,
            expected_version=cart.version if check_version else None
        )
        if reply[0] == 0:
            raise ConcurrencyConflictError(cart.id, cart.version)

    def ids_expired(self, now: datetime) -> List[str]:
        return self.redis.zrangebyscore(EXPIRY_INDEX_KEY, "-inf", now.timestamp())

    def ids_with_expired_reservations(self, now: datetime) -> List[str]:
        return self.redis.zrangebyscore(RESERVATION_INDEX_KEY, "-inf", now.timestamp())

    def ids_idle_since(self, cutoff: datetime) -> List[str]:
        """Non-empty, non-abandoned carts not touched since `cutoff`"""
        return self.redis.zrangebyscore(ACTIVITY_INDEX_KEY, "-inf", cutoff.timestamp())


class GuestSessionRepository:
    """Guest sessions, kept for 30 days"""

    def __init__(self, redis: RedisClient):
        self.redis = redis

    def _get_session_key(self, session_id: str) -> str:
        return f"guest_session:{session_id}"

    def get(self, session_id: str) -> Optional[GuestSession]:
        raw = self.redis.get(self._get_session_key(session_id))
        if raw is None:
            return None
        return GuestSession.model_validate_json(raw)

    def save(self, session: GuestSession) -> GuestSession:
        self.redis.set(
            self._get_session_key(session.session_id),
            session.model_dump_json(),
            ex=GUEST_SESSION_TTL_SECONDS
        )
        return session


class SavedCartRepository:
    """Saved carts and templates, indexed per user and by replenish date"""

    def __init__(self, redis: RedisClient):
        self.redis = redis

    def _get_saved_cart_key(self, saved_cart_id: str) -> str:
        return f"saved_cart:{saved_cart_id}"

    def _get_user_index_key(self, user_id: str) -> str:
        return f"saved_carts:user:{user_id}"

    def get(self, saved_cart_id: str) -> Optional[SavedCart]:
        raw = self.redis.get(self._get_saved_cart_key(saved_cart_id))
        if raw is None:
            return None
        return SavedCart.model_validate_json(raw)

    def list_for_user(self, user_id: str) -> List[SavedCart]:
        """Newest first"""
        ids = self.redis.zrangebyscore(self._get_user_index_key(user_id), "-inf", "+inf")
        carts = [self.get(saved_cart_id) for saved_cart_id in reversed(ids)]
        return [cart for cart in carts if cart is not None]

    def save(self, saved_cart: SavedCart) -> SavedCart:
        self.redis.set(self._get_saved_cart_key(saved_cart.id), saved_cart.model_dump_json())
        self.redis.zadd(
            self._get_user_index_key(saved_cart.user_id),
            {saved_cart.id: saved_cart.created_at.timestamp()}
        )

        replenish = saved_cart.auto_replenish
        if saved_cart.is_template and replenish.enabled and replenish.next_date is not None:
            self.redis.zadd(REPLENISH_INDEX_KEY, {saved_cart.id: replenish.next_date.timestamp()})
        else:
            self.redis.zrem(REPLENISH_INDEX_KEY, saved_cart.id)
        return saved_cart

    def delete(self, saved_cart: SavedCart) -> None:
        self.redis.delete(self._get_saved_cart_key(saved_cart.id))
        self.redis.zrem(self._get_user_index_key(saved_cart.user_id), saved_cart.id)
        self.redis.zrem(REPLENISH_INDEX_KEY, saved_cart.id)

    def due_templates(self, now: datetime) -> List[SavedCart]:
        ids = self.redis.zrangebyscore(REPLENISH_INDEX_KEY, "-inf", now.timestamp())
        templates = [self.get(saved_cart_id) for saved_cart_id in ids]
        return [template for template in templates if template is not None]
