"""
Lua scripts for atomic Redis operations.

Every script validates all of its keys before writing any of them, so a
failure leaves the store exactly as it was (all-or-nothing per call).
Replies are flat arrays: {status, ...}. Status 1 is success and -1 means a
stock record did not exist; for the stock scripts 0 means insufficient stock,
for the cart scripts 0 is a version conflict and -2 insufficient stock. The
second element is the 1-based index of the offending line (or the version
found, on a conflict).

A stock record exists when its hash has a quantity field. Sales are counted
on a separate stock_sold:<product> counter.
"""
from typing import List, Optional, Sequence, Tuple

# (record key, sold counter key, kind, quantity)
StockOperation = Tuple[str, str, str, int]

# Script to reserve stock for a batch of records
RESERVE_STOCK_SCRIPT = """
local pending = {}

-- Validate every line before touching anything
for i = 1, #KEYS do
    local key = KEYS[i]
    local qty = tonumber(ARGV[i])
    if redis.call('HEXISTS', key, 'quantity') == 0 then
        return {-1, i}
    end
    if redis.call('HGET', key, 'track_inventory') == '1' then
        local quantity = tonumber(redis.call('HGET', key, 'quantity'))
        local reserved = tonumber(redis.call('HGET', key, 'reserved'))
        local already = pending[key] or 0
        local headroom = math.max(0, quantity - reserved - already)
        if headroom < qty and redis.call('HGET', key, 'allow_backorder') ~= '1' then
            return {0, i, headroom}
        end
        pending[key] = already + qty
    end
end

-- Apply
for key, qty in pairs(pending) do
    local reserved = redis.call('HINCRBY', key, 'reserved', qty)
    local quantity = tonumber(redis.call('HGET', key, 'quantity'))
    redis.call('HSET', key, 'available', math.max(0, quantity - reserved))
end

return {1}
"""

# Script to release reserved stock; over-release clamps at zero
RELEASE_STOCK_SCRIPT = """
for i = 1, #KEYS do
    if redis.call('HEXISTS', KEYS[i], 'quantity') == 0 then
        return {-1, i}
    end
end

for i = 1, #KEYS do
    local key = KEYS[i]
    if redis.call('HGET', key, 'track_inventory') == '1' then
        local quantity = tonumber(redis.call('HGET', key, 'quantity'))
        local reserved = tonumber(redis.call('HGET', key, 'reserved'))
        reserved = math.max(0, reserved - tonumber(ARGV[i]))
        redis.call('HSET', key, 'reserved', reserved, 'available', math.max(0, quantity - reserved))
    end
end

return {1}
"""

# Script to turn holds into sales
# KEYS come in pairs (record key, product sold counter); ARGV in pairs (quantity, reserved flag)
COMMIT_STOCK_SCRIPT = """
local n = #KEYS / 2
local pending = {}

for i = 1, n do
    local key = KEYS[2 * i - 1]
    if redis.call('HEXISTS', key, 'quantity') == 0 then
        return {-1, i}
    end
    local qty = tonumber(ARGV[2 * i - 1])
    -- Lines without a hold must not oversell
    if ARGV[2 * i] == '0' and redis.call('HGET', key, 'track_inventory') == '1' then
        local quantity = tonumber(redis.call('HGET', key, 'quantity'))
        local reserved = tonumber(redis.call('HGET', key, 'reserved'))
        local already = pending[key] or 0
        local headroom = math.max(0, quantity - reserved - already)
        if headroom < qty and redis.call('HGET', key, 'allow_backorder') ~= '1' then
            return {0, i, headroom}
        end
        pending[key] = already + qty
    end
end

local result = {1}
for i = 1, n do
    local key = KEYS[2 * i - 1]
    local qty = tonumber(ARGV[2 * i - 1])
    if redis.call('HGET', key, 'track_inventory') == '1' then
        local quantity = tonumber(redis.call('HGET', key, 'quantity'))
        local reserved = tonumber(redis.call('HGET', key, 'reserved'))
        quantity = math.max(0, quantity - qty)
        if ARGV[2 * i] == '1' then
            reserved = math.max(0, reserved - qty)
        end
        redis.call('HSET', key, 'quantity', quantity, 'reserved', reserved,
                   'available', math.max(0, quantity - reserved))
        if quantity <= tonumber(redis.call('HGET', key, 'low_stock_threshold')) then
            table.insert(result, i)
        end
    end
    redis.call('INCRBY', KEYS[2 * i], qty)
end

return result
"""

# Script to apply a manual correction and append its audit entry
# ARGV: delta, JSON date, JSON type, JSON reason
ADJUST_STOCK_SCRIPT = """
local key = KEYS[1]
if redis.call('HEXISTS', key, 'quantity') == 0 then
    return {-1, 1}
end

local delta = tonumber(ARGV[1])
local previous = tonumber(redis.call('HGET', key, 'quantity'))
local reserved = tonumber(redis.call('HGET', key, 'reserved'))
local quantity = math.max(0, previous + delta)
redis.call('HSET', key, 'quantity', quantity, 'available', math.max(0, quantity - reserved))

local entry = string.format(
    '{"date": %s, "type": %s, "quantity": %d, "reason": %s, "previous_stock": %d, "new_stock": %d}',
    ARGV[2], ARGV[3], math.abs(delta), ARGV[4], previous, quantity
)
redis.call('RPUSH', KEYS[2], entry)

return {1, previous, quantity}
"""

# Script to write a cart document together with its stock changes, only
# if nobody else wrote the cart since it was read
# KEYS: cart hash, expiry zset, reservation zset, activity zset,
#       owner keys, detach keys, then (stock record, product sold counter)
#       pairs, one per stock operation
# ARGV: expected version, document, cart id, expiry score, reservation score,
#       activity score, owner key count, detach key count, then (kind,
#       quantity) pairs; kind is reserve, release, commit (a held sale) or
#       sell (a sale without a hold)
SAVE_CART_SCRIPT = """
local current = redis.call('HGET', KEYS[1], 'version')
if not current then
    current = '0'
end
if current ~= ARGV[1] then
    return {0, tonumber(current)}
end

local cart_id = ARGV[3]
local n_owner = tonumber(ARGV[7])
local n_detach = tonumber(ARGV[8])
local first_stock = 5 + n_owner + n_detach
local n_ops = (#KEYS - first_stock + 1) / 2

-- Net the operations per record; a release against a vanished record is moot
local order = {}
local hold = {}
local sold = {}
local demand = {}
local first_op = {}
local demand_op = {}
for op = 1, n_ops do
    local key = KEYS[first_stock + 2 * op - 2]
    local kind = ARGV[7 + 2 * op]
    local qty = tonumber(ARGV[8 + 2 * op])
    if redis.call('HEXISTS', key, 'quantity') == 0 then
        if kind ~= 'release' then
            return {-1, op}
        end
    else
        if not first_op[key] then
            first_op[key] = op
            hold[key] = 0
            sold[key] = 0
            demand[key] = 0
            table.insert(order, key)
        end
        if kind == 'reserve' then
            hold[key] = hold[key] + qty
            demand[key] = demand[key] + qty
            demand_op[key] = op
        elseif kind == 'release' then
            hold[key] = hold[key] - qty
            demand[key] = demand[key] - qty
        elseif kind == 'commit' then
            hold[key] = hold[key] - qty
            sold[key] = sold[key] + qty
        else
            sold[key] = sold[key] + qty
            demand[key] = demand[key] + qty
            demand_op[key] = op
        end
    end
end

-- Validate every net demand on available stock before touching anything
for _, key in ipairs(order) do
    if demand[key] > 0 and redis.call('HGET', key, 'track_inventory') == '1' then
        local quantity = tonumber(redis.call('HGET', key, 'quantity'))
        local reserved = tonumber(redis.call('HGET', key, 'reserved'))
        local headroom = math.max(0, quantity - reserved)
        if headroom < demand[key] and redis.call('HGET', key, 'allow_backorder') ~= '1' then
            return {-2, demand_op[key], headroom}
        end
    end
end

local low = {}
for _, key in ipairs(order) do
    if (hold[key] ~= 0 or sold[key] ~= 0) and redis.call('HGET', key, 'track_inventory') == '1' then
        local quantity = math.max(0, tonumber(redis.call('HGET', key, 'quantity')) - sold[key])
        local reserved = math.max(0, tonumber(redis.call('HGET', key, 'reserved')) + hold[key])
        redis.call('HSET', key, 'quantity', quantity, 'reserved', reserved,
                   'available', math.max(0, quantity - reserved))
        if sold[key] > 0 and quantity <= tonumber(redis.call('HGET', key, 'low_stock_threshold')) then
            table.insert(low, first_op[key])
        end
    end
end

for op = 1, n_ops do
    local kind = ARGV[7 + 2 * op]
    if kind == 'commit' or kind == 'sell' then
        redis.call('INCRBY', KEYS[first_stock + 2 * op - 1], ARGV[8 + 2 * op])
    end
end

local version = tonumber(current) + 1
redis.call('HSET', KEYS[1], 'version', version, 'doc', ARGV[2])

-- Sweep indexes; empty score removes the cart from the index
for idx = 1, 3 do
    local score = ARGV[3 + idx]
    if score == '' then
        redis.call('ZREM', KEYS[1 + idx], cart_id)
    else
        redis.call('ZADD', KEYS[1 + idx], score, cart_id)
    end
end

for k = 5, 4 + n_owner do
    redis.call('SET', KEYS[k], cart_id)
end
for k = 5 + n_owner, first_stock - 1 do
    if redis.call('GET', KEYS[k]) == cart_id then
        redis.call('DEL', KEYS[k])
    end
end

local result = {1, version}
for _, op in ipairs(low) do
    table.insert(result, op)
end
return result
"""

# Script to delete a cart with its index entries
# KEYS: cart hash, expiry zset, reservation zset, activity zset, owner index keys...
# ARGV: cart id, expected version ('' skips the check)
DELETE_CART_SCRIPT = """
if ARGV[2] ~= '' then
    local current = redis.call('HGET', KEYS[1], 'version')
    if not current then
        current = '0'
    end
    if current ~= ARGV[2] then
        return {0, tonumber(current)}
    end
end

redis.call('DEL', KEYS[1])
for idx = 2, 4 do
    redis.call('ZREM', KEYS[idx], ARGV[1])
end
for k = 5, #KEYS do
    if redis.call('GET', KEYS[k]) == ARGV[1] then
        redis.call('DEL', KEYS[k])
    end
end

return {1}
"""


class AtomicScripts:
    """Typed entry points for the Lua scripts"""

    def __init__(self, redis_wrapper):
        """
        Initialize with RedisClient wrapper (not raw redis.Redis client)
        so every call goes through its retry logic and error handling
        """
        self.redis_wrapper = redis_wrapper

    def _run(self, script: str, keys: Sequence[str], args: Sequence) -> List[int]:
        reply = self.redis_wrapper.eval(script, len(keys), *keys, *[str(a) for a in args])
        return [int(value) for value in reply]

    def reserve_stock(self, record_keys: Sequence[str], quantities: Sequence[int]) -> List[int]:
        """Execute reserve script"""
        return self._run(RESERVE_STOCK_SCRIPT, record_keys, quantities)

    def release_stock(self, record_keys: Sequence[str], quantities: Sequence[int]) -> List[int]:
        """Execute release script"""
        return self._run(RELEASE_STOCK_SCRIPT, record_keys, quantities)

    def commit_stock(
        self,
        record_keys: Sequence[str],
        sold_keys: Sequence[str],
        quantities: Sequence[int],
        reserved_flags: Sequence[bool]
    ) -> List[int]:
        """Execute commit script"""
        keys: List[str] = []
        args: List[str] = []
        for record_key, sold_key, quantity, reserved in zip(
            record_keys, sold_keys, quantities, reserved_flags
        ):
            keys.extend([record_key, sold_key])
            args.extend([str(quantity), "1" if reserved else "0"])
        return self._run(COMMIT_STOCK_SCRIPT, keys, args)

    def adjust_stock(
        self,
        record_key: str,
        history_key: str,
        delta: int,
        date_json: str,
        type_json: str,
        reason_json: str
    ) -> List[int]:
        """Execute adjust script"""
        return self._run(
            ADJUST_STOCK_SCRIPT,
            [record_key, history_key],
            [delta, date_json, type_json, reason_json]
        )

    def save_cart(
        self,
        cart_key: str,
        index_keys: Sequence[str],
        owner_keys: Sequence[str],
        detach_keys: Sequence[str],
        expected_version: int,
        document: str,
        cart_id: str,
        scores: Sequence[Optional[float]],
        stock_operations: Sequence[StockOperation] = ()
    ) -> List[int]:
        """Execute compare-and-set save script"""
        keys = [cart_key, *index_keys, *owner_keys, *detach_keys]
        args = [
            str(expected_version),
            document,
            cart_id,
            *["" if score is None else repr(score) for score in scores],
            str(len(owner_keys)),
            str(len(detach_keys)),
        ]
        for record_key, sold_key, kind, quantity in stock_operations:
            keys.extend([record_key, sold_key])
            args.extend([kind, str(quantity)])
        return self._run(SAVE_CART_SCRIPT, keys, args)

    def delete_cart(
        self,
        cart_key: str,
        index_keys: Sequence[str],
        owner_keys: Sequence[str],
        cart_id: str,
        expected_version: Optional[int] = None
    ) -> List[int]:
        """Execute delete script"""
        keys = [cart_key, *index_keys, *owner_keys]
        args = [cart_id, "" if expected_version is None else str(expected_version)]
        return self._run(DELETE_CART_SCRIPT, keys, args)
