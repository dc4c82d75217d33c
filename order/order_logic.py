import logging
import uuid
from datetime import date, datetime, timedelta
from typing import Annotated, Iterable, Union

import msgspec
from msgspec import msgpack, Meta, Struct
from redis.asyncio import Redis
from redis.exceptions import RedisError, WatchError

from common.db.util import retry_db_call
from common.errors import (
    OrderNotFoundError,
    PersistenceError,
    Result,
    StatusConflictError,
    ValidationError,
)
from common.kafka.events_config import EVENT_ORDER_CREATED
from common.kafka.messages import isoformat, utc_now
from order.outbox import OUTBOX_KEY, encode_entry, order_event
from order.saga.state_machine import OrderStatus

DB_ERROR_STR = "DB error"

ALL_ORDERS_INDEX = "orders:all"
PROMO_USAGE_TTL = int(timedelta(days=2).total_seconds())


def order_key(internal_id: str) -> str:
    return f"order:{internal_id}"


def lines_key(internal_id: str) -> str:
    return f"order:{internal_id}:lines"


def ref_key(order_id: str) -> str:
    return f"order:ref:{order_id}"


def status_index(status) -> str:
    return f"orders:status:{OrderStatus(status).value}"


def user_index(username: str) -> str:
    return f"orders:user:{username}"


def promo_usage_key(username: str, promo_id: str, day: date) -> str:
    return f"promo_usage:{username}:{promo_id}:{day.isoformat()}"


# ------------------------------------------
# Request payloads
# ------------------------------------------

class OrderLineRequest(Struct):
    product_id: Union[str, int]
    qty: Annotated[int, Meta(ge=1)]
    unit_price: Annotated[int, Meta(ge=0)]
    promo_id: Union[str, int, None] = None
    deducted_price: Annotated[int, Meta(ge=0)] = 0


class CreateOrderRequest(Struct):
    username: Annotated[str, Meta(min_length=3, max_length=50)]
    items: Annotated[list[OrderLineRequest], Meta(min_length=1)]
    total_price: Annotated[int, Meta(ge=0)] | None = None


class UpdateStatusRequest(Struct):
    status: str


# ------------------------------------------
# Stored values
# ------------------------------------------

class OrderLineValue(Struct):
    id: str
    product_id: str
    qty: int
    unit_price: int
    promo_id: str | None
    deducted_price: int
    line_total: int


class OrderValue(Struct):
    id: str
    order_id: str
    username: str
    order_date: str
    created_ts: float
    total_price: int
    status: str
    updated_at: str
    reason: str | None = None


class Order(Struct):
    id: str
    order_id: str
    username: str
    order_date: str
    total_price: int
    status: str
    updated_at: str
    reason: str | None
    lines: list[OrderLineValue]

    @classmethod
    def from_values(cls, header: OrderValue, lines: list[OrderLineValue]) -> "Order":
        return cls(
            id=header.id,
            order_id=header.order_id,
            username=header.username,
            order_date=header.order_date,
            total_price=header.total_price,
            status=header.status,
            updated_at=header.updated_at,
            reason=header.reason,
            lines=lines,
        )

    @property
    def created_day(self) -> date:
        return datetime.fromisoformat(self.order_date).date()

    def to_dict(self) -> dict:
        return msgspec.to_builtins(self)


def build_lines(items: list[OrderLineRequest]) -> Result[list[OrderLineValue], ValidationError]:
    if not items:
        return [], ValidationError("Order must contain at least one item")
    lines = []
    for index, item in enumerate(items):
        if item.qty < 1:
            return [], ValidationError(f"items[{index}].qty must be at least 1")
        if item.unit_price < 0 or item.deducted_price < 0:
            return [], ValidationError(f"items[{index}] prices must not be negative")
        line_total = item.qty * item.unit_price - item.deducted_price
        if line_total < 0:
            return [], ValidationError(f"items[{index}].deducted_price exceeds the line amount")
        lines.append(OrderLineValue(
            id=uuid.uuid4().hex,
            product_id=str(item.product_id),
            qty=item.qty,
            unit_price=item.unit_price,
            promo_id=str(item.promo_id) if item.promo_id is not None else None,
            deducted_price=item.deducted_price,
            line_total=line_total,
        ))
    return lines, None


class OrderLogic:
    """Order store: order headers, their lines and the status indexes, all in redis."""

    def __init__(self, logger, db: Redis, clock=utc_now, max_retries: int = 5):
        self.logger = logger
        self.db = db
        self.clock = clock
        self.max_retries = max_retries

    async def create_order(self, username: str, items: list[OrderLineRequest],
                           total_price: int | None = None) -> Result[Order | None, ValidationError | PersistenceError]:
        if not username or not username.strip():
            return None, ValidationError("username is required")
        lines, err = build_lines(items)
        if err:
            return None, err
        computed_total = sum(line.line_total for line in lines)
        if total_price is not None and total_price != computed_total:
            return None, ValidationError(
                f"total_price {total_price} does not match the sum of line totals {computed_total}"
            )

        now = self.clock()
        header = OrderValue(
            id=uuid.uuid4().hex,
            order_id=str(uuid.uuid4()),
            username=username,
            order_date=isoformat(now),
            created_ts=now.timestamp(),
            total_price=computed_total,
            status=OrderStatus.PENDING.value,
            updated_at=isoformat(now),
        )
        order = Order.from_values(header, lines)
        entry = order_event(order, EVENT_ORDER_CREATED)
        try:
            async with self.db.pipeline(transaction=True) as pipe:
                pipe.set(order_key(header.id), msgpack.encode(header))
                pipe.set(lines_key(header.id), msgpack.encode(lines))
                pipe.set(ref_key(header.order_id), header.id)
                pipe.zadd(ALL_ORDERS_INDEX, {header.id: header.created_ts})
                pipe.zadd(status_index(OrderStatus.PENDING), {header.id: header.created_ts})
                pipe.zadd(user_index(username), {header.id: header.created_ts})
                pipe.rpush(OUTBOX_KEY, encode_entry(entry))
                await pipe.execute()
        except RedisError as e:
            self.logger.error(f"Unable to persist order for {username}: {e}")
            return None, PersistenceError(DB_ERROR_STR)
        self.logger.info(f"Order {order.order_id} created for {username} with {len(lines)} line(s)")
        return order, None

    async def _internal_id(self, order_id: str) -> Result[str | None, OrderNotFoundError | PersistenceError]:
        try:
            internal_id = await retry_db_call(self.db.get, ref_key(order_id))
        except RedisError as e:
            return None, PersistenceError(e.args[0] if e.args else DB_ERROR_STR)
        if internal_id is None:
            return None, OrderNotFoundError(f"Order {order_id} not found")
        return internal_id.decode() if isinstance(internal_id, bytes) else internal_id, None

    async def get_order(self, order_id: str) -> Result[Order | None, OrderNotFoundError | PersistenceError]:
        internal_id, err = await self._internal_id(order_id)
        if err:
            return None, err
        orders, err = await self._load_orders([internal_id])
        if err:
            return None, err
        if not orders:
            return None, OrderNotFoundError(f"Order {order_id} not found")
        return orders[0], None

    async def _load_orders(self, internal_ids: list[str]) -> Result[list[Order], PersistenceError]:
        if not internal_ids:
            return [], None
        try:
            async with self.db.pipeline(transaction=False) as pipe:
                for internal_id in internal_ids:
                    pipe.get(order_key(internal_id))
                    pipe.get(lines_key(internal_id))
                raw = await pipe.execute()
        except RedisError as e:
            return [], PersistenceError(e.args[0] if e.args else DB_ERROR_STR)
        orders = []
        for raw_header, raw_lines in zip(raw[::2], raw[1::2]):
            if raw_header is None:
                continue
            header = msgpack.decode(raw_header, type=OrderValue)
            lines = msgpack.decode(raw_lines, type=list[OrderLineValue]) if raw_lines else []
            orders.append(Order.from_values(header, lines))
        return orders, None

    async def _index_members(self, index: str, start: int = 0, stop: int = -1) -> list[str]:
        members = await retry_db_call(self.db.zrevrange, index, start, stop)
        return [m.decode() if isinstance(m, bytes) else m for m in members]

    async def get_orders_by_username(self, username: str) -> Result[list[Order], PersistenceError]:
        try:
            internal_ids = await self._index_members(user_index(username))
        except RedisError as e:
            return [], PersistenceError(e.args[0] if e.args else DB_ERROR_STR)
        return await self._load_orders(internal_ids)

    async def list_orders(self, status: OrderStatus | None = None, username: str | None = None,
                          page: int = 1, limit: int = 10) -> Result[list[Order], ValidationError | PersistenceError]:
        if page < 1 or limit < 1:
            return [], ValidationError("page and limit must be positive")
        index = status_index(status) if status is not None else ALL_ORDERS_INDEX
        offset = (page - 1) * limit
        try:
            if not username:
                internal_ids = await self._index_members(index, offset, offset + limit - 1)
                return await self._load_orders(internal_ids)
            internal_ids = await self._index_members(index)
        except RedisError as e:
            return [], PersistenceError(e.args[0] if e.args else DB_ERROR_STR)
        # substring match on the owner needs the headers
        orders, err = await self._load_orders(internal_ids)
        if err:
            return [], err
        needle = username.lower()
        matching = [order for order in orders if needle in order.username.lower()]
        return matching[offset:offset + limit], None

    async def transition_status(self, order_id: str, new_status: OrderStatus, reason: str | None = None,
                                event: str | None = None, event_details: dict | None = None,
                                expected: Iterable[OrderStatus] | None = None
                                ) -> Result[Order | None, OrderNotFoundError | StatusConflictError | PersistenceError]:
        """
        Overwrite the status of an order. Callers decide whether the edge is legal.

        ``expected`` makes the write conditional on the current status (checked under WATCH).
        ``event`` is recorded in the outbox within the same transaction. Moving to
        completed also adds the promo lines to the owner's daily promo usage.
        """
        new_status = OrderStatus(new_status)
        expected = {OrderStatus(s) for s in expected} if expected is not None else None
        internal_id, err = await self._internal_id(order_id)
        if err:
            return None, err

        for attempt in range(self.max_retries):
            try:
                async with self.db.pipeline(transaction=True) as pipe:
                    await pipe.watch(order_key(internal_id))
                    raw_header = await pipe.get(order_key(internal_id))
                    if raw_header is None:
                        return None, OrderNotFoundError(f"Order {order_id} not found")
                    raw_lines = await pipe.get(lines_key(internal_id))
                    header = msgpack.decode(raw_header, type=OrderValue)
                    lines = msgpack.decode(raw_lines, type=list[OrderLineValue]) if raw_lines else []
                    current = OrderStatus(header.status)
                    if expected is not None and current not in expected:
                        await pipe.unwatch()
                        return Order.from_values(header, lines), StatusConflictError(
                            f"Order {order_id} is {current.value}", current_status=current.value
                        )

                    header.status = new_status.value
                    header.reason = reason
                    header.updated_at = isoformat(self.clock())
                    order = Order.from_values(header, lines)

                    pipe.multi()
                    pipe.set(order_key(internal_id), msgpack.encode(header))
                    if current != new_status:
                        pipe.zrem(status_index(current), internal_id)
                        pipe.zadd(status_index(new_status), {internal_id: header.created_ts})
                    if new_status == OrderStatus.COMPLETED and current != OrderStatus.COMPLETED:
                        for line in lines:
                            if line.promo_id is None:
                                continue
                            usage_key = promo_usage_key(header.username, line.promo_id, order.created_day)
                            pipe.incrby(usage_key, line.qty)
                            pipe.expire(usage_key, PROMO_USAGE_TTL)
                    if event is not None:
                        pipe.rpush(OUTBOX_KEY, encode_entry(order_event(order, event, **(event_details or {}))))
                    await pipe.execute()
                self.logger.info(f"Order {order_id} status {current.value} -> {new_status.value}")
                return order, None
            except WatchError:
                self.logger.warning(f"Concurrent update on order {order_id}, retry {attempt + 1}")
                continue
            except RedisError as e:
                self.logger.error(f"Unable to update status of order {order_id}: {e}")
                return None, PersistenceError(DB_ERROR_STR)
        return None, PersistenceError(f"Order {order_id} kept changing, giving up after {self.max_retries} attempts")

    async def get_daily_promo_usage(self, username: str, promo_id: str,
                                    day: date | None = None) -> Result[int, PersistenceError]:
        """Quantity of ``promo_id`` in the owner's completed orders placed on ``day`` (today by default)."""
        day = day or self.clock().date()
        try:
            used = await retry_db_call(self.db.get, promo_usage_key(username, promo_id, day))
        except RedisError as e:
            return 0, PersistenceError(e.args[0] if e.args else DB_ERROR_STR)
        return int(used) if used else 0, None

    async def list_stale_pending(self, older_than: datetime) -> Result[list[str], PersistenceError]:
        try:
            internal_ids = await retry_db_call(
                self.db.zrangebyscore, status_index(OrderStatus.PENDING), "-inf", older_than.timestamp()
            )
        except RedisError as e:
            return [], PersistenceError(e.args[0] if e.args else DB_ERROR_STR)
        orders, err = await self._load_orders([i.decode() if isinstance(i, bytes) else i for i in internal_ids])
        if err:
            return [], err
        return [order.order_id for order in orders], None
