import logging
import unittest
from unittest.mock import AsyncMock, patch

from quart.testing import QuartClient

import order.routing.http as http
from common.errors import PersistenceError
from redis_helpers import fake_redis
from order.app_instance import app
from order.order_logic import OrderLogic
from order.saga.correlation import CorrelationStore
from order.saga.orchestrator import SagaOrchestrator

ORDER_BODY = {
    "username": "alice",
    "items": [
        {"product_id": "P1", "qty": 2, "unit_price": 500},
        {"product_id": "P2", "qty": 1, "unit_price": 300, "promo_id": "PR1", "deducted_price": 100},
    ],
}


class TestHttp(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        """Set up a Quart test client backed by an in-memory store."""
        self.test_client: QuartClient = app.test_client()
        self.db = fake_redis()
        self.logic = OrderLogic(logging.getLogger("test"), self.db)
        self.orchestrator = SagaOrchestrator(self.logic, CorrelationStore(), logging.getLogger("test"))
        http.init(self.logic, self.orchestrator)

    async def create_order(self):
        response = await self.test_client.post("/orders", json=ORDER_BODY)
        return (await response.get_json())["data"]

    async def test_create_order(self):
        response = await self.test_client.post("/orders", json=ORDER_BODY)
        data = await response.get_json()

        self.assertEqual(response.status_code, 201)
        self.assertTrue(data["success"])
        self.assertEqual(data["data"]["status"], "pending")
        self.assertEqual(data["data"]["total_price"], 1200)
        self.assertEqual(len(data["data"]["lines"]), 2)

    async def test_create_order_invalid_body(self):
        response = await self.test_client.post("/orders", json={"username": "alice", "items": []})
        data = await response.get_json()

        self.assertEqual(response.status_code, 400)
        self.assertFalse(data["success"])
        self.assertIn("Invalid request body", data["message"])

    async def test_create_order_negative_quantity(self):
        body = {"username": "alice", "items": [{"product_id": "P1", "qty": 0, "unit_price": 1}]}

        response = await self.test_client.post("/orders", json=body)

        self.assertEqual(response.status_code, 400)

    async def test_create_order_persistence_failure(self):
        with patch("order.routing.http.logic", new_callable=AsyncMock) as mock_logic:
            mock_logic.create_order.return_value = (None, PersistenceError("DB error"))

            response = await self.test_client.post("/orders", json=ORDER_BODY)
            data = await response.get_json()

            self.assertEqual(response.status_code, 500)
            self.assertEqual(data, {"success": False, "message": "DB error"})

    async def test_get_order(self):
        created = await self.create_order()

        response = await self.test_client.get(f"/orders/{created['order_id']}")
        data = await response.get_json()

        self.assertEqual(response.status_code, 200)
        self.assertEqual(data["data"]["order_id"], created["order_id"])
        self.assertIsNone(data["data"]["reason"])

    async def test_get_missing_order(self):
        response = await self.test_client.get("/orders/does-not-exist")
        data = await response.get_json()

        self.assertEqual(response.status_code, 404)
        self.assertFalse(data["success"])

    async def test_orders_by_username(self):
        await self.create_order()
        await self.create_order()

        response = await self.test_client.get("/orders/user/alice")
        data = await response.get_json()

        self.assertEqual(len(data["data"]), 2)

    async def test_list_orders_with_bad_status(self):
        response = await self.test_client.get("/orders?status=shipped")

        self.assertEqual(response.status_code, 400)

    async def test_list_orders_by_status(self):
        await self.create_order()

        response = await self.test_client.get("/orders?status=pending&page=1&limit=5")
        data = await response.get_json()

        self.assertEqual(len(data["data"]), 1)
        self.assertEqual(data["limit"], 5)

    async def test_update_status_with_unknown_value_leaves_order_untouched(self):
        created = await self.create_order()

        response = await self.test_client.put(f"/orders/{created['order_id']}/status", json={"status": "shipped"})
        data = await response.get_json()

        self.assertEqual(response.status_code, 400)
        self.assertIn("Invalid status", data["message"])
        order, _ = await self.logic.get_order(created["order_id"])
        self.assertEqual(order.status, "pending")

    async def test_update_status_of_missing_order(self):
        response = await self.test_client.put("/orders/does-not-exist/status", json={"status": "cancelled"})

        self.assertEqual(response.status_code, 404)

    async def test_update_status_out_of_terminal_state(self):
        created = await self.create_order()
        await self.test_client.put(f"/orders/{created['order_id']}/status", json={"status": "cancelled"})

        response = await self.test_client.put(f"/orders/{created['order_id']}/status", json={"status": "pending"})

        self.assertEqual(response.status_code, 409)

    async def test_update_status(self):
        created = await self.create_order()

        response = await self.test_client.put(f"/orders/{created['order_id']}/status", json={"status": "cancelled"})
        data = await response.get_json()

        self.assertEqual(response.status_code, 200)
        self.assertEqual(data["data"]["status"], "cancelled")
        self.assertEqual(data["data"]["reason"], "Order cancelled manually")

    async def test_complete_payment_requires_ready_order(self):
        created = await self.create_order()

        response = await self.test_client.post(f"/orders/{created['order_id']}/complete-payment")

        self.assertEqual(response.status_code, 409)

    async def test_complete_payment(self):
        created = await self.create_order()
        await self.test_client.put(f"/orders/{created['order_id']}/status", json={"status": "ready_for_payment"})

        response = await self.test_client.post(f"/orders/{created['order_id']}/complete-payment")
        data = await response.get_json()

        self.assertEqual(response.status_code, 200)
        self.assertEqual(data["data"]["status"], "completed")

    async def test_complete_payment_of_missing_order(self):
        response = await self.test_client.post("/orders/does-not-exist/complete-payment")

        self.assertEqual(response.status_code, 404)

    async def test_health(self):
        http.init(self.logic, self.orchestrator, AsyncMock(return_value=({"status": "unhealthy"}, False)))

        response = await self.test_client.get("/health")

        self.assertEqual(response.status_code, 503)
        self.assertEqual((await response.get_json())["status"], "unhealthy")
