"""
Stock ledger: reserve, release, commit and adjust inventory counts in Redis.

A stock record is a Redis hash per product (stock:<product>) or per variant
(stock:<product>:<variant>). Units sold are counted per product on
stock_sold:<product>. Every mutation runs inside a Lua script so the check
and the increment are one atomic step and a batch is all-or-nothing.
"""
import json
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from shopcart.atomic_scripts import AtomicScripts, StockOperation
from shopcart.exceptions import InsufficientStockError, NotFoundError, ValidationError
from shopcart.models import (
    Availability,
    CommitItem,
    Reservation,
    StockAdjustment,
    StockItem,
    StockRecord,
    utcnow,
)
from shopcart.redis_client import RedisClient

logger = logging.getLogger(__name__)

STOCK_INDEX_KEY = "stock:index"

# Kinds of stock operation a cart write can carry
RESERVE = "reserve"
RELEASE = "release"
COMMIT = "commit"
SELL = "sell"
HOLD_SIGN = {RESERVE: 1, RELEASE: -1, COMMIT: -1, SELL: 0}

LowStockNotifier = Callable[[StockRecord], None]


def stock_record_key(product_id: str, variant_id: Optional[str] = None) -> str:
    if variant_id:
        return f"stock:{product_id}:{variant_id}"
    return f"stock:{product_id}"


def stock_sold_key(product_id: str) -> str:
    return f"stock_sold:{product_id}"


class StockChangeSet:
    """
    Stock changes collected while mutating a cart, applied by the cart
    repository in the same atomic write as the cart document.

    Quacks like StockService for reserve_stock/release_stock/commit_stock,
    so the cart aggregate does not care which one it is handed.
    """

    def __init__(self):
        self.changes: List[Tuple[StockItem, str]] = []
        # Filled in by the repository once the write succeeds
        self.low_stock: List[StockItem] = []

    def reserve_stock(self, items: Sequence[StockItem]) -> List[Reservation]:
        now = utcnow()
        reservations = []
        for item in items:
            self.changes.append((item, RESERVE))
            reservations.append(Reservation(
                product_id=item.product_id,
                variant_id=item.variant_id,
                quantity=item.quantity,
                reserved_at=now
            ))
        return reservations

    def release_stock(self, items: Sequence[StockItem]) -> None:
        for item in items:
            self.changes.append((item, RELEASE))

    def commit_stock(self, items: Sequence[CommitItem]) -> None:
        for item in items:
            self.changes.append((item, COMMIT if item.reserved else SELL))

    @property
    def keys(self) -> List[str]:
        return [stock_record_key(item.product_id, item.variant_id) for item, _ in self.changes]

    @property
    def deltas(self) -> List[int]:
        """Signed change to the held count per operation"""
        return [HOLD_SIGN[kind] * item.quantity for item, kind in self.changes]

    @property
    def operations(self) -> List[StockOperation]:
        return [
            (stock_record_key(item.product_id, item.variant_id), stock_sold_key(item.product_id), kind, item.quantity)
            for item, kind in self.changes
        ]

    def __len__(self) -> int:
        return len(self.changes)


def log_low_stock(record: StockRecord) -> None:
    """Default notifier; alert delivery belongs to the notification service"""
    target = record.product_id if not record.variant_id else f"{record.product_id}/{record.variant_id}"
    logger.warning(f"Low stock alert: {target} has {record.quantity} left")


class StockService:
    """Authoritative inventory counts per (product, variant)"""

    def __init__(
        self,
        redis: RedisClient,
        low_stock_notifier: Optional[LowStockNotifier] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.redis = redis
        self.scripts = AtomicScripts(redis)
        self.low_stock_notifier = low_stock_notifier or log_low_stock
        self.clock = clock

    def _get_record_key(self, product_id: str, variant_id: Optional[str] = None) -> str:
        return stock_record_key(product_id, variant_id)

    def _get_history_key(self, product_id: str, variant_id: Optional[str] = None) -> str:
        return self._get_record_key(product_id, variant_id).replace("stock:", "stock_history:", 1)

    def _not_found(self, product_id: str, variant_id: Optional[str]) -> NotFoundError:
        if variant_id:
            return NotFoundError(f"Variant {variant_id} not found for product {product_id}")
        return NotFoundError(f"Product {product_id} not found")

    @staticmethod
    def _parse_record(data: Dict[str, str]) -> StockRecord:
        return StockRecord(
            product_id=data["product_id"],
            variant_id=data.get("variant_id") or None,
            quantity=int(data.get("quantity", 0)),
            reserved=int(data.get("reserved", 0)),
            available=int(data.get("available", 0)),
            allow_backorder=data.get("allow_backorder") == "1",
            track_inventory=data.get("track_inventory") == "1",
            low_stock_threshold=int(data.get("low_stock_threshold", 0))
        )

    def create_record(
        self,
        product_id: str,
        quantity: int,
        variant_id: Optional[str] = None,
        allow_backorder: bool = False,
        track_inventory: bool = True,
        low_stock_threshold: int = 0
    ) -> StockRecord:
        """Create (or overwrite) the stock record for a product or variant"""
        if quantity < 0:
            raise ValidationError("Stock quantity cannot be negative")

        key = self._get_record_key(product_id, variant_id)
        existing = self.redis.hgetall(key)
        reserved = int(existing.get("reserved", 0)) if existing else 0

        self.redis.hset(key, {
            "product_id": product_id,
            "variant_id": variant_id or "",
            "quantity": quantity,
            "reserved": reserved,
            "available": max(0, quantity - reserved),
            "allow_backorder": "1" if allow_backorder else "0",
            "track_inventory": "1" if track_inventory else "0",
            "low_stock_threshold": low_stock_threshold,
        })
        self.redis.sadd(STOCK_INDEX_KEY, key)
        return self.get_record(product_id, variant_id)

    def get_record(self, product_id: str, variant_id: Optional[str] = None) -> StockRecord:
        data = self.redis.hgetall(self._get_record_key(product_id, variant_id))
        if not data or "quantity" not in data:
            raise self._not_found(product_id, variant_id)
        return self._parse_record(data)

    def check_availability(
        self,
        product_id: str,
        quantity: int,
        variant_id: Optional[str] = None
    ) -> Availability:
        """Can `quantity` units be sold right now?"""
        record = self.get_record(product_id, variant_id)

        if not record.track_inventory:
            return Availability(available=True, in_stock=None, allow_backorder=record.allow_backorder)

        return Availability(
            available=record.available >= quantity or record.allow_backorder,
            in_stock=record.available,
            allow_backorder=record.allow_backorder
        )

    def reserve_stock(self, items: Sequence[StockItem]) -> List[Reservation]:
        """
        Hold stock for every line of the batch, or for none of them.

        Raises:
            NotFoundError: a product or variant has no stock record
            InsufficientStockError: a line exceeds what is available and
                backorder is not allowed; carries the available count
        """
        if not items:
            return []

        keys = [self._get_record_key(item.product_id, item.variant_id) for item in items]
        reply = self.scripts.reserve_stock(keys, [item.quantity for item in items])
        self._raise_for_reply(reply, items)

        reserved_at = self.clock()
        logger.info(f"Reserved stock for {len(items)} line(s)")
        return [
            Reservation(
                product_id=item.product_id,
                variant_id=item.variant_id,
                quantity=item.quantity,
                reserved_at=reserved_at
            )
            for item in items
        ]

    def release_stock(self, items: Sequence[StockItem]) -> None:
        """Give held stock back; releasing more than is held clamps at zero"""
        if not items:
            return

        keys = [self._get_record_key(item.product_id, item.variant_id) for item in items]
        reply = self.scripts.release_stock(keys, [item.quantity for item in items])
        self._raise_for_reply(reply, items)
        logger.info(f"Released stock for {len(items)} line(s)")

    def commit_stock(self, items: Sequence[CommitItem]) -> List[StockRecord]:
        """
        Convert holds into sales after a successful order.

        Lines flagged reserved=False had no hold and are checked against
        available stock first. Returns the records that dropped to or below
        their low-stock threshold; the notifier is called for each only after
        the whole batch is durable.
        """
        if not items:
            return []

        reply = self.scripts.commit_stock(
            [self._get_record_key(item.product_id, item.variant_id) for item in items],
            [stock_sold_key(item.product_id) for item in items],
            [item.quantity for item in items],
            [item.reserved for item in items]
        )
        self._raise_for_reply(reply, items)

        logger.info(f"Committed stock for {len(items)} line(s)")
        return self.notify_low_stock([items[index - 1] for index in reply[1:]])

    def notify_low_stock(self, items: Sequence[StockItem]) -> List[StockRecord]:
        """
        Hand the current record for each item to the low-stock notifier.
        A failing notifier is logged and never fails the caller.
        """
        low_stock = [self.get_record(item.product_id, item.variant_id) for item in items]
        for record in low_stock:
            try:
                self.low_stock_notifier(record)
            except Exception:
                logger.error(f"Low stock notification failed for {record.product_id}", exc_info=True)
        return low_stock

    def adjust_stock(
        self,
        product_id: str,
        delta: int,
        reason: str,
        variant_id: Optional[str] = None
    ) -> StockAdjustment:
        """Manual correction (restock, write-off); on-hand never goes below zero"""
        if delta == 0:
            raise ValidationError("Stock adjustment must be non-zero")

        date = self.clock()
        adjustment_type = "addition" if delta > 0 else "deduction"
        reply = self.scripts.adjust_stock(
            self._get_record_key(product_id, variant_id),
            self._get_history_key(product_id, variant_id),
            delta,
            json.dumps(date.isoformat()),
            json.dumps(adjustment_type),
            json.dumps(reason)
        )
        if reply[0] == -1:
            raise self._not_found(product_id, variant_id)

        logger.info(f"Adjusted stock for {product_id} by {delta}: {reason}")
        return StockAdjustment(
            date=date,
            type=adjustment_type,
            quantity=abs(delta),
            reason=reason,
            previous_stock=reply[1],
            new_stock=reply[2]
        )

    def get_sold_count(self, product_id: str) -> int:
        sold = self.redis.get(stock_sold_key(product_id))
        return int(sold) if sold is not None else 0

    def get_history(self, product_id: str, variant_id: Optional[str] = None) -> List[StockAdjustment]:
        entries = self.redis.lrange(self._get_history_key(product_id, variant_id), 0, -1)
        return [StockAdjustment.model_validate_json(entry) for entry in entries]

    def get_low_stock(self, threshold: Optional[int] = None) -> List[StockRecord]:
        """Tracked records at or below their own threshold (or the given one)"""
        low = []
        for key in sorted(self.redis.smembers(STOCK_INDEX_KEY)):
            data = self.redis.hgetall(key)
            if not data or "quantity" not in data:
                continue
            record = self._parse_record(data)
            if not record.track_inventory:
                continue
            limit = record.low_stock_threshold if threshold is None else threshold
            if record.quantity <= limit:
                low.append(record)
        return low

    def _raise_for_reply(self, reply: List[int], items: Sequence[StockItem]) -> None:
        status = reply[0]
        if status == 1:
            return

        item = items[reply[1] - 1]
        if status == -1:
            raise self._not_found(item.product_id, item.variant_id)

        raise InsufficientStockError(
            product_id=item.product_id,
            requested=item.quantity,
            in_stock=reply[2],
            variant_id=item.variant_id
        )
