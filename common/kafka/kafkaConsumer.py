from aiokafka import AIOKafkaConsumer, ConsumerRebalanceListener
from aiokafka.errors import KafkaError
import asyncio
import logging
from typing import Awaitable, Callable

import msgspec

from common.errors import MessagingError
from common.kafka.messages import Envelope, decode_envelope
from common.kafka.topics_config import Queue, ROUTING_KEY_HEADER

EventCallback = Callable[[Envelope, str], Awaitable[None]]


def routing_key_of(message) -> str | None:
    for name, value in message.headers or ():
        if name == ROUTING_KEY_HEADER:
            return value.decode("utf-8")
    return None


class KafkaQueueConsumer:
    """
    Consumes one queue: a consumer group on the queue's exchange topic whose
    bindings decide which routing keys reach the callback.

    Offsets are committed only once the callback returned (delayed ack). If the
    callback raises, the partition is rewound to the failed message so it is
    delivered again after ``retry_backoff`` seconds (nack + requeue). Within a
    fetched batch, messages with different keys run concurrently and messages
    with the same key run in order.
    """

    class SafeRebalanceListener(ConsumerRebalanceListener):
        def __init__(self, owner):
            self.owner = owner

        async def on_partitions_revoked(self, revoked):
            logging.info(f"[REBALANCE] [{self.owner.queue.name}] Revoking partitions: {revoked}")
            async with self.owner._rebalance_lock:
                pass

        async def on_partitions_assigned(self, assigned):
            logging.info(f"[REBALANCE] [{self.owner.queue.name}] Assigned new partitions: {assigned}")

    def __init__(self, queue: Queue, bootstrap_servers: str, callback: EventCallback,
                 max_records: int = 100, retry_backoff: float = 1.0):
        self.queue = queue
        self.bootstrap_servers = bootstrap_servers
        self.callback = callback
        self.max_records = max_records
        self.retry_backoff = retry_backoff
        self._consumer: AIOKafkaConsumer | None = None
        self._task: asyncio.Task | None = None
        self._rebalance_lock = asyncio.Lock()

    async def start(self):
        if self._consumer is not None:
            return
        consumer = AIOKafkaConsumer(
            bootstrap_servers=self.bootstrap_servers,
            group_id=self.queue.name,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
        )
        consumer.subscribe([self.queue.exchange.name], listener=self.SafeRebalanceListener(self))
        try:
            await consumer.start()
        except KafkaError as e:
            raise MessagingError(f"Unable to start consumer for {self.queue.name}: {e}") from e
        self._consumer = consumer
        logging.info(f"Kafka Consumer started on queue {self.queue.name} bound to {self.queue.bindings}")
        self._task = asyncio.create_task(self._consume_events())

    async def _consume_events(self):
        while True:
            try:
                batch = await self._consumer.getmany(timeout_ms=1000, max_records=self.max_records)
                if not batch:
                    continue
                async with self._rebalance_lock:
                    results = await asyncio.gather(
                        *(self._process_partition(tp, messages) for tp, messages in batch.items())
                    )
                if not all(results):
                    await asyncio.sleep(self.retry_backoff)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logging.error(f"Error during event consuming on {self.queue.name}: {e}")
                await asyncio.sleep(self.retry_backoff)

    async def _process_partition(self, tp, messages) -> bool:
        by_key: dict[bytes | None, list] = {}
        for message in messages:
            by_key.setdefault(message.key, []).append(message)
        failed = await asyncio.gather(*(self._process_in_order(group) for group in by_key.values()))
        failed_offsets = [offset for offset in failed if offset is not None]
        if failed_offsets:
            rewind_to = min(failed_offsets)
            if rewind_to > messages[0].offset:
                await self._consumer.commit({tp: rewind_to})
            self._consumer.seek(tp, rewind_to)
            logging.warning(f"Requeued {tp.topic}[{tp.partition}] from offset {rewind_to} on {self.queue.name}")
            return False
        await self._consumer.commit({tp: messages[-1].offset + 1})
        return True

    async def _process_in_order(self, messages) -> int | None:
        """Handle messages of one key in order; return the offset of the first failure, if any."""
        for message in messages:
            if not await self.handle_message(message):
                return message.offset
        return None

    async def handle_message(self, message) -> bool:
        routing_key = routing_key_of(message)
        if routing_key is None or not self.queue.accepts(routing_key):
            return True
        try:
            envelope = decode_envelope(message.value)
        except msgspec.DecodeError as e:
            # undecodable: acknowledge and drop
            logging.error(f"Dropping undecodable message on {self.queue.name} at offset {message.offset}: {e}")
            return True
        try:
            await self.callback(envelope, routing_key)
        except Exception as e:
            logging.error(f"Error processing {routing_key} on {self.queue.name}: {e}", exc_info=True)
            return False
        return True

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def close(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                logging.info(f"Consumer task for {self.queue.name} cancelled")
            self._task = None
        if self._consumer:
            await self._consumer.stop()
            logging.info(f"Kafka Consumer on {self.queue.name} stopped")
            self._consumer = None
