import logging
import unittest
from unittest.mock import Mock, patch

from msgspec import msgpack
from redis.exceptions import ResponseError

from common.errors import PersistenceError, ProductNotFoundError, PromotionNotFoundError, ValidationError
from common.kafka.messages import OrderItem
from redis_helpers import fake_redis, write_before_next_execute
from stock.stock_logic import (
    CreateProductRequest,
    CreatePromotionRequest,
    InventoryLogic,
    ProductValue,
    product_cache_key,
    product_key,
)


class TestInventoryLogic(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.db = fake_redis()
        self.logic = InventoryLogic(logging.getLogger("test"), self.db, cache_ttl=1800)

    async def product(self, product_id="P1", qty=10, **kwargs):
        product, err = await self.logic.create_product(
            CreateProductRequest(product_name="Widget", price=500, qty=qty, product_id=product_id, **kwargs)
        )
        self.assertIsNone(err)
        return product

    async def stored_qty(self, product_id):
        return msgpack.decode(await self.db.get(product_key(product_id)), type=ProductValue).qty

    async def test_create_and_get_product_populates_cache(self):
        await self.product()

        product, err = await self.logic.get_product("P1")

        self.assertIsNone(err)
        self.assertEqual(product.qty, 10)
        self.assertEqual(await self.db.exists(product_cache_key("P1")), 1)
        ttl = await self.db.ttl(product_cache_key("P1"))
        self.assertTrue(0 < ttl <= 1800)

    async def test_cached_product_is_served_from_cache(self):
        await self.product()
        await self.logic.get_product("P1")
        await self.db.delete(product_key("P1"))

        product, err = await self.logic.get_product("P1")

        self.assertIsNone(err)
        self.assertEqual(product.product_id, "P1")

    async def test_duplicate_product_id(self):
        await self.product()

        _, err = await self.logic.create_product(CreateProductRequest(product_name="Other", price=1, product_id="P1"))

        self.assertIsInstance(err, ValidationError)

    async def test_missing_product(self):
        _, err = await self.logic.get_product("nope")

        self.assertIsInstance(err, ProductNotFoundError)

    async def test_add_stock_invalidates_cache(self):
        await self.product()
        await self.logic.get_product("P1")

        qty, err = await self.logic.add_stock("P1", 5)

        self.assertIsNone(err)
        self.assertEqual(qty, 15)
        product, _ = await self.logic.get_product("P1")
        self.assertEqual(product.qty, 15)

    async def test_add_stock_to_missing_product(self):
        _, err = await self.logic.add_stock("nope", 5)

        self.assertIsInstance(err, ProductNotFoundError)

    async def test_promotions(self):
        created, err = await self.logic.create_promotion(
            CreatePromotionRequest(promotion_name="Spring", qty_max=3, promo_id="PR1")
        )
        self.assertIsNone(err)

        promotion, err = await self.logic.get_promotion("PR1")
        self.assertEqual(promotion, created)
        _, err = await self.logic.get_promotion("nope")
        self.assertIsInstance(err, PromotionNotFoundError)

    async def test_deduct_for_order_floors_at_zero_and_refreshes_cache(self):
        await self.product("P1", qty=10)
        await self.product("P2", qty=1)
        await self.logic.get_product("P1")

        remaining, err = await self.logic.deduct_for_order("order-1", [
            OrderItem(product_id="P1", qty=3),
            OrderItem(product_id="P1", qty=2),
            OrderItem(product_id="P2", qty=4),
            OrderItem(product_id="gone", qty=1),
        ])

        self.assertIsNone(err)
        self.assertEqual(remaining, {"P1": 5, "P2": 0})
        self.assertEqual(await self.stored_qty("P1"), 5)
        self.assertEqual(await self.stored_qty("P2"), 0)
        product, _ = await self.logic.get_product("P1")
        self.assertEqual(product.qty, 5)

    async def test_deduct_for_order_only_once(self):
        await self.product("P1", qty=10)
        items = [OrderItem(product_id="P1", qty=3)]

        await self.logic.deduct_for_order("order-1", items)
        remaining, err = await self.logic.deduct_for_order("order-1", items)

        self.assertIsNone(err)
        self.assertEqual(remaining, {})
        self.assertEqual(await self.stored_qty("P1"), 7)

    async def test_deduct_retries_after_concurrent_update(self):
        await self.product("P1", qty=10)

        async def concurrent_restock():
            await self.db.set(product_key("P1"), msgpack.encode(ProductValue("P1", "Widget", 500, 15)))

        with write_before_next_execute(self.db, concurrent_restock):
            remaining, err = await self.logic.deduct_for_order("order-1", [OrderItem(product_id="P1", qty=3)])

        self.assertIsNone(err)
        self.assertEqual(remaining, {"P1": 12})

    async def test_deduct_persistence_error(self):
        await self.product("P1", qty=10)
        with patch.object(self.db, "pipeline", Mock(side_effect=ResponseError("write refused"))):
            _, err = await self.logic.deduct_for_order("order-1", [OrderItem(product_id="P1", qty=3)])

        self.assertIsInstance(err, PersistenceError)
