"""
Correlation store: the saga state table of in-flight validations, keyed by order id.

Entries are created when a verdict arrives and deleted once the saga decided
the order's next status. The sweeper evicts entries older than the staleness
window so a saga whose resolution never happened cannot hold memory forever.
Eviction never touches the order itself.
"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager

from msgspec import msgpack, Struct
from redis.asyncio import Redis
from redis.exceptions import RedisError

from common.db.util import retry_db_call
from common.errors import PersistenceError
from common.kafka.messages import ValidationVerdict

DEFAULT_STALENESS_WINDOW = 300.0


class SagaState(Struct):
    order_id: str
    verdict: ValidationVerdict
    received: bool
    inserted_at: float


class CorrelationStore:
    """Process-local saga state table."""

    def __init__(self, staleness_window: float = DEFAULT_STALENESS_WINDOW,
                 sweep_interval: float = 60.0, clock=time.monotonic, logger=None):
        self.logger = logger or logging.getLogger("order-service.saga")
        self.staleness_window = staleness_window
        self.sweep_interval = sweep_interval
        self.clock = clock
        self._entries: dict[str, SagaState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._task: asyncio.Task | None = None

    @asynccontextmanager
    async def guard(self, order_id: str):
        """Serializes verdict handling for one order, e.g. when a redelivery races the original."""
        lock = self._locks.setdefault(order_id, asyncio.Lock())
        self._lock_users[order_id] = self._lock_users.get(order_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[order_id] -= 1
            if not self._lock_users[order_id]:
                del self._lock_users[order_id]
                del self._locks[order_id]

    async def put(self, order_id: str, verdict: ValidationVerdict) -> SagaState:
        state = SagaState(order_id=order_id, verdict=verdict, received=True, inserted_at=self.clock())
        self._entries[order_id] = state
        return state

    async def get(self, order_id: str) -> SagaState | None:
        return self._entries.get(order_id)

    async def delete(self, order_id: str):
        self._entries.pop(order_id, None)

    async def sweep(self) -> list[str]:
        cutoff = self.clock() - self.staleness_window
        stale = [order_id for order_id, state in self._entries.items() if state.inserted_at < cutoff]
        for order_id in stale:
            self.logger.info(f"[SAGA {order_id}] Evicting stale correlation entry")
            await self.delete(order_id)
        return stale

    def __len__(self):
        return len(self._entries)

    async def _sweep_forever(self):
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                evicted = await self.sweep()
                if evicted:
                    self.logger.info(f"Correlation sweep evicted {len(evicted)} entr{'y' if len(evicted) == 1 else 'ies'}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"Correlation sweep failed: {e}")

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._sweep_forever())

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                self.logger.info("Correlation sweeper stopped")
            self._task = None


class RedisCorrelationStore(CorrelationStore):
    """
    Saga state table shared by several order service instances.

    Redis expires entries after the staleness window, so there is nothing left
    for the sweep to do. Locks stay process-local.
    """

    KEY_PREFIX = "saga:correlation:"

    def __init__(self, db: Redis, staleness_window: float = DEFAULT_STALENESS_WINDOW,
                 sweep_interval: float = 60.0, clock=time.time, logger=None):
        super().__init__(staleness_window, sweep_interval, clock, logger)
        self.db = db

    def _key(self, order_id: str) -> str:
        return f"{self.KEY_PREFIX}{order_id}"

    async def put(self, order_id: str, verdict: ValidationVerdict) -> SagaState:
        state = SagaState(order_id=order_id, verdict=verdict, received=True, inserted_at=self.clock())
        try:
            await retry_db_call(self.db.set, self._key(order_id), msgpack.encode(state),
                                px=int(self.staleness_window * 1000))
        except RedisError as e:
            raise PersistenceError(f"Unable to store correlation entry for {order_id}: {e}") from e
        return state

    async def get(self, order_id: str) -> SagaState | None:
        try:
            raw = await retry_db_call(self.db.get, self._key(order_id))
        except RedisError as e:
            raise PersistenceError(f"Unable to read correlation entry for {order_id}: {e}") from e
        return msgpack.decode(raw, type=SagaState) if raw else None

    async def delete(self, order_id: str):
        try:
            await retry_db_call(self.db.delete, self._key(order_id))
        except RedisError as e:
            raise PersistenceError(f"Unable to delete correlation entry for {order_id}: {e}") from e

    async def sweep(self) -> list[str]:
        # expiry is left to redis
        return []
