import uuid
from datetime import timedelta
from typing import Annotated

from msgspec import msgpack, Meta, Struct
from redis.asyncio import Redis
from redis.exceptions import RedisError, WatchError

from common.db.util import retry_db_call
from common.errors import (
    PersistenceError,
    ProductNotFoundError,
    PromotionNotFoundError,
    Result,
    ValidationError,
)
from common.kafka.messages import OrderItem

DB_ERROR_STR = "DB error"

DEFAULT_CACHE_TTL = 1800
# outlives the correlation window
DEDUCTION_MARKER_TTL = int(timedelta(days=7).total_seconds())


def product_key(product_id: str) -> str:
    return f"product:{product_id}"


def product_cache_key(product_id: str) -> str:
    return f"cache:product:{product_id}"


def promotion_key(promo_id: str) -> str:
    return f"promotion:{promo_id}"


def deduction_marker_key(order_id: str) -> str:
    return f"stock:deducted:{order_id}"


class CreateProductRequest(Struct):
    product_name: Annotated[str, Meta(min_length=1, max_length=200)]
    price: Annotated[int, Meta(ge=0)]
    qty: Annotated[int, Meta(ge=0)] = 0
    is_active: bool = True
    product_id: str | None = None


class CreatePromotionRequest(Struct):
    promotion_name: Annotated[str, Meta(min_length=1, max_length=200)]
    qty_max: Annotated[int, Meta(ge=1)]
    is_active: bool = True
    promo_id: str | None = None


class ProductValue(Struct):
    product_id: str
    product_name: str
    price: int
    qty: int
    is_active: bool = True


class PromotionValue(Struct):
    promo_id: str
    promotion_name: str
    qty_max: int
    is_active: bool = True


class InventoryLogic:
    """Products, promotions and stock levels of the inventory service."""

    def __init__(self, logger, db: Redis, cache_ttl: int = DEFAULT_CACHE_TTL, max_retries: int = 5):
        self.logger = logger
        self.db = db
        self.cache_ttl = cache_ttl
        self.max_retries = max_retries

    async def _create(self, key: str, value: Struct, what: str) -> Result[Struct | None, ValidationError | PersistenceError]:
        try:
            created = await retry_db_call(self.db.set, key, msgpack.encode(value), nx=True)
        except RedisError as e:
            self.logger.error(f"Unable to store {key}: {e}")
            return None, PersistenceError(DB_ERROR_STR)
        if not created:
            return None, ValidationError(f"{what} already exists")
        return value, None

    async def create_product(self, request: CreateProductRequest) -> Result[ProductValue | None, ValidationError | PersistenceError]:
        product = ProductValue(
            product_id=request.product_id or str(uuid.uuid4()),
            product_name=request.product_name,
            price=request.price,
            qty=request.qty,
            is_active=request.is_active,
        )
        return await self._create(product_key(product.product_id), product, f"Product {product.product_id}")

    async def get_product(self, product_id: str) -> Result[ProductValue | None, ProductNotFoundError | PersistenceError]:
        """Read-through: the cache entry first, then the product record, which then refreshes the cache."""
        try:
            cached = await retry_db_call(self.db.get, product_cache_key(product_id))
            if cached:
                return msgpack.decode(cached, type=ProductValue), None
            entry = await retry_db_call(self.db.get, product_key(product_id))
        except RedisError as e:
            return None, PersistenceError(e.args[0] if e.args else DB_ERROR_STR)
        if not entry:
            return None, ProductNotFoundError(f"Product {product_id} not found")
        product = msgpack.decode(entry, type=ProductValue)
        await self._cache_product(product)
        return product, None

    async def _cache_product(self, product: ProductValue):
        try:
            await self.db.set(product_cache_key(product.product_id), msgpack.encode(product), ex=self.cache_ttl)
        except RedisError as e:
            # best effort
            self.logger.warning(f"Unable to cache product {product.product_id}: {e}")

    async def _invalidate(self, product_ids):
        if not product_ids:
            return
        try:
            await self.db.delete(*(product_cache_key(product_id) for product_id in product_ids))
        except RedisError as e:
            self.logger.warning(f"Unable to invalidate cached products {list(product_ids)}: {e}")

    async def add_stock(self, product_id: str, amount: int) -> Result[int, ProductNotFoundError | ValidationError | PersistenceError]:
        if amount < 1:
            return 0, ValidationError("amount must be positive")
        key = product_key(product_id)
        for attempt in range(self.max_retries):
            try:
                async with self.db.pipeline(transaction=True) as pipe:
                    await pipe.watch(key)
                    entry = await pipe.get(key)
                    if entry is None:
                        return 0, ProductNotFoundError(f"Product {product_id} not found")
                    product = msgpack.decode(entry, type=ProductValue)
                    product.qty += amount
                    pipe.multi()
                    pipe.set(key, msgpack.encode(product))
                    await pipe.execute()
                break
            except WatchError:
                self.logger.warning(f"Concurrent update on product {product_id}, retry {attempt + 1}")
                continue
            except RedisError as e:
                self.logger.error(f"Unable to add stock to {product_id}: {e}")
                return 0, PersistenceError(DB_ERROR_STR)
        else:
            return 0, PersistenceError(f"Product {product_id} kept changing, giving up")
        await self._invalidate([product_id])
        return product.qty, None

    async def create_promotion(self, request: CreatePromotionRequest) -> Result[PromotionValue | None, ValidationError | PersistenceError]:
        promotion = PromotionValue(
            promo_id=request.promo_id or str(uuid.uuid4()),
            promotion_name=request.promotion_name,
            qty_max=request.qty_max,
            is_active=request.is_active,
        )
        return await self._create(promotion_key(promotion.promo_id), promotion, f"Promotion {promotion.promo_id}")

    async def get_promotion(self, promo_id: str) -> Result[PromotionValue | None, PromotionNotFoundError | PersistenceError]:
        try:
            entry = await retry_db_call(self.db.get, promotion_key(promo_id))
        except RedisError as e:
            return None, PersistenceError(e.args[0] if e.args else DB_ERROR_STR)
        if not entry:
            return None, PromotionNotFoundError(f"Promotion {promo_id} not found")
        return msgpack.decode(entry, type=PromotionValue), None

    async def deduct_for_order(self, order_id: str, items: list[OrderItem]) -> Result[dict[str, int], PersistenceError]:
        """
        Remove the quantities of a completed order from stock, at most once per order.

        Stock never goes below zero. Products that no longer exist are skipped.
        Returns the remaining quantity per touched product (empty when the
        order was already deducted).
        """
        requested: dict[str, int] = {}
        for item in items:
            requested[item.product_id] = requested.get(item.product_id, 0) + item.qty
        marker = deduction_marker_key(order_id)
        keys = [product_key(product_id) for product_id in requested]

        for attempt in range(self.max_retries):
            try:
                async with self.db.pipeline(transaction=True) as pipe:
                    await pipe.watch(marker, *keys)
                    if await pipe.exists(marker):
                        self.logger.info(f"Stock for order {order_id} already deducted")
                        await pipe.unwatch()
                        return {}, None
                    remaining = {}
                    updated = {}
                    for product_id, qty in requested.items():
                        entry = await pipe.get(product_key(product_id))
                        if entry is None:
                            self.logger.warning(f"Product {product_id} of order {order_id} not found, skipped")
                            continue
                        product = msgpack.decode(entry, type=ProductValue)
                        if product.qty < qty:
                            self.logger.warning(f"Product {product_id} has {product.qty} left, "
                                                f"order {order_id} takes {qty}")
                        product.qty = max(product.qty - qty, 0)
                        updated[product_id] = product
                        remaining[product_id] = product.qty
                    pipe.multi()
                    for product_id, product in updated.items():
                        pipe.set(product_key(product_id), msgpack.encode(product))
                    pipe.set(marker, b"1", ex=DEDUCTION_MARKER_TTL)
                    await pipe.execute()
                break
            except WatchError:
                self.logger.warning(f"Concurrent stock update while deducting order {order_id}, retry {attempt + 1}")
                continue
            except RedisError as e:
                self.logger.error(f"Unable to deduct stock for order {order_id}: {e}")
                return {}, PersistenceError(DB_ERROR_STR)
        else:
            return {}, PersistenceError(f"Stock for order {order_id} kept changing, giving up")

        await self._invalidate(updated)
        for product in updated.values():
            await self._cache_product(product)
        self.logger.info(f"Stock deducted for order {order_id}: {remaining}")
        return remaining, None
