"""
Transactional outbox for order events.

The order store appends an :class:`OutboxEntry` in the same MULTI/EXEC as the
status change it announces. :class:`OutboxDispatcher` publishes entries in
order and removes each one only after the broker acknowledged it, so a lost
publish is retried instead of leaving an order stuck.
"""
import asyncio
import logging
import uuid

import msgspec
from msgspec import msgpack, Struct
from redis.asyncio import Redis
from redis.exceptions import RedisError

from common.db.util import retry_db_call
from common.errors import MessagingError
from common.kafka.kafkaProducer import KafkaProducerSingleton
from common.kafka.messages import Envelope, OrderEventData, OrderItem, build_envelope
from common.kafka.topics_config import EXCHANGES, ORDER_EXCHANGE, order_routing_key

OUTBOX_KEY = "outbox:order-events"


class OutboxEntry(Struct):
    id: str
    exchange: str
    routing_key: str
    key: str
    envelope: Envelope


def order_event(order, event_type: str, **extra) -> OutboxEntry:
    """Build the outbox entry announcing ``event_type`` for ``order`` (an order_logic.Order)."""
    data = OrderEventData(
        order_id=order.order_id,
        username=order.username,
        order_status=order.status,
        total_price=order.total_price,
        order_date=order.order_date,
        updated_at=order.updated_at,
        reason=order.reason,
        items=[
            OrderItem(
                product_id=line.product_id,
                qty=line.qty,
                unit_price=line.unit_price,
                promo_id=line.promo_id,
                deducted_price=line.deducted_price,
                line_total=line.line_total,
            )
            for line in order.lines
        ],
        **extra,
    )
    return OutboxEntry(
        id=uuid.uuid4().hex,
        exchange=ORDER_EXCHANGE.name,
        routing_key=order_routing_key(event_type),
        key=order.order_id,
        envelope=build_envelope(event_type, data),
    )


def encode_entry(entry: OutboxEntry) -> bytes:
    return msgpack.encode(entry)


class OutboxDispatcher:

    def __init__(self, db: Redis, producer=KafkaProducerSingleton, poll_interval: float = 0.5,
                 batch_size: int = 50, max_backoff: float = 30.0, logger=None):
        self.db = db
        self.producer = producer
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.max_backoff = max_backoff
        self.logger = logger or logging.getLogger("order-service.outbox")
        self.attempts: dict[str, int] = {}
        self.loop_errors = 0
        self._exchanges = {exchange.name: exchange for exchange in EXCHANGES}
        self._task: asyncio.Task | None = None

    async def _discard(self, raw: bytes, err: Exception):
        self.logger.error(f"[OUTBOX] Discarding unpublishable entry: {err}")
        await retry_db_call(self.db.lrem, OUTBOX_KEY, 1, raw)

    async def dispatch_once(self) -> int:
        """Publish pending entries in order; stop at the first failure. Returns how many were published."""
        try:
            raw_entries = await retry_db_call(self.db.lrange, OUTBOX_KEY, 0, self.batch_size - 1)
        except RedisError as e:
            self.logger.error(f"[OUTBOX] Unable to read outbox: {e}")
            return 0
        published = 0
        for raw in raw_entries:
            try:
                entry = msgpack.decode(raw, type=OutboxEntry)
                exchange = self._exchanges[entry.exchange]
            except (msgspec.DecodeError, KeyError) as e:
                await self._discard(raw, e)
                continue
            try:
                await self.producer.send_event(exchange, entry.routing_key, entry.key, entry.envelope)
            except MessagingError as e:
                self.attempts[entry.id] = self.attempts.get(entry.id, 0) + 1
                self.logger.error(f"[OUTBOX] Publish of {entry.routing_key} for order {entry.key} failed "
                                  f"(attempt {self.attempts[entry.id]}): {e}")
                break
            self.attempts.pop(entry.id, None)
            try:
                await retry_db_call(self.db.lrem, OUTBOX_KEY, 1, raw)
            except RedisError as e:
                # published but still queued, it will go out again
                self.logger.error(f"[OUTBOX] Unable to remove entry {entry.id}: {e}")
                break
            published += 1
        return published

    def backoff(self) -> float:
        failures = max([self.loop_errors, *self.attempts.values()])
        if not failures:
            return self.poll_interval
        return min(self.poll_interval * 2 ** failures, self.max_backoff)

    async def _run(self):
        while True:
            try:
                published = await self.dispatch_once()
                self.loop_errors = 0
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.loop_errors += 1
                self.logger.error(f"[OUTBOX] Dispatch failed: {e}", exc_info=True)
                published = 0
            if published < self.batch_size:
                await asyncio.sleep(self.backoff())

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._run())
            self.logger.info("[OUTBOX] Dispatcher started")

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                self.logger.info("[OUTBOX] Dispatcher stopped")
            self._task = None

    async def pending(self) -> int:
        return await retry_db_call(self.db.llen, OUTBOX_KEY)
