import logging
import unittest
from unittest.mock import AsyncMock, patch

from msgspec import msgpack

from common.errors import OrderNotFoundError, ProcessingError, StatusConflictError, ValidationError
from common.kafka.messages import LineVerdict, ValidationVerdict
from redis_helpers import fake_redis
from order.order_logic import OrderLineRequest, OrderLogic
from order.outbox import OUTBOX_KEY, OutboxEntry
from order.saga.correlation import CorrelationStore
from order.saga.orchestrator import SagaOrchestrator
from order.saga.state_machine import OrderStatus


def stock_line(product_id="P1", requested=2, available=10, **promo):
    reason = "ok" if available >= requested else "insufficient_stock"
    return LineVerdict(product_id=product_id, product_name="Widget", requested_qty=requested,
                       available_qty=available, is_valid=reason == "ok", reason=reason, **promo)


class TestSagaOrchestrator(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.db = fake_redis()
        self.logic = OrderLogic(logging.getLogger("test"), self.db)
        self.correlation = CorrelationStore()
        self.saga = SagaOrchestrator(self.logic, self.correlation, logging.getLogger("test"))
        self.order, _ = await self.logic.create_order("alice", [
            OrderLineRequest(product_id="P1", qty=2, unit_price=500, promo_id="PR1"),
        ])

    def verdict(self, *lines, error=None):
        return ValidationVerdict(
            order_id=self.order.order_id,
            is_stock_valid=error is None and all(line.is_valid for line in lines),
            has_promo_items=any(line.has_promo for line in lines),
            validation_details=list(lines),
            error=error,
        )

    async def status(self):
        order, _ = await self.logic.get_order(self.order.order_id)
        return order

    async def events(self):
        raw = await self.db.lrange(OUTBOX_KEY, 0, -1)
        return [msgpack.decode(r, type=OutboxEntry).routing_key for r in raw]

    async def test_scenario_valid_stock_no_promo(self):
        await self.saga.handle_verdict(self.verdict(stock_line(requested=2, available=10)))

        self.assertEqual((await self.status()).status, "ready_for_payment")
        self.assertEqual(await self.events(), ["order.created", "order.ready_for_payment"])
        self.assertEqual(len(self.correlation), 0)

    async def test_scenario_out_of_stock(self):
        await self.saga.handle_verdict(self.verdict(stock_line(requested=5, available=1)))

        order = await self.status()
        self.assertEqual(order.status, "cancelled")
        self.assertIn("P1", order.reason)
        self.assertIn("out of stock", order.reason)
        self.assertEqual((await self.events())[-1], "order.cancelled")

    async def test_scenario_promo_over_daily_limit(self):
        await self.db.set("promo_usage:alice:PR1:" + self.order.created_day.isoformat(), 2)

        await self.saga.handle_verdict(self.verdict(
            stock_line(requested=2, has_promo=True, promo_id="PR1", max_promo_qty=3)
        ))

        order = await self.status()
        self.assertEqual(order.status, "cancelled")
        self.assertIn("daily promotional item limits", order.reason)

    async def test_promo_within_limit(self):
        await self.saga.handle_verdict(self.verdict(
            stock_line(requested=2, has_promo=True, promo_id="PR1", max_promo_qty=3)
        ))

        self.assertEqual((await self.status()).status, "ready_for_payment")

    async def test_duplicate_verdict_changes_nothing(self):
        first = self.verdict(stock_line(requested=5, available=1))
        await self.saga.handle_verdict(first)
        reason = (await self.status()).reason

        await self.saga.handle_verdict(self.verdict(stock_line(requested=2, available=10)))

        order = await self.status()
        self.assertEqual(order.status, "cancelled")
        self.assertEqual(order.reason, reason)
        self.assertEqual(await self.events(), ["order.created", "order.cancelled"])

    async def test_verdict_for_unknown_order_is_dropped(self):
        verdict = ValidationVerdict(order_id="nope", is_stock_valid=True, has_promo_items=False)

        await self.saga.handle_verdict(verdict)

        self.assertEqual(len(self.correlation), 0)

    async def test_error_verdict_fails_order(self):
        await self.saga.handle_verdict(self.verdict(error="validator crashed"))

        order = await self.status()
        self.assertEqual(order.status, "failed")
        self.assertTrue(order.reason.startswith("Order processing failed"))
        self.assertEqual((await self.events())[-1], "order.updated")

    async def test_processing_exception_forces_failed(self):
        with patch("order.saga.orchestrator.decide", side_effect=RuntimeError("boom")):
            await self.saga.handle_verdict(self.verdict(stock_line()))

        order = await self.status()
        self.assertEqual(order.status, "failed")
        self.assertEqual(order.reason, "Order processing failed: boom")
        self.assertEqual(len(self.correlation), 0)

    async def test_failure_to_record_failed_status_propagates(self):
        lost = AsyncMock(side_effect=[
            (None, ProcessingError("write lost")),
            (None, ProcessingError("still lost")),
        ])

        with patch.object(self.logic, "transition_status", lost):
            with self.assertRaises(ProcessingError):
                await self.saga.handle_verdict(self.verdict(stock_line()))

        self.assertEqual((await self.status()).status, "pending")
        self.assertEqual(len(self.correlation), 0)

    async def test_complete_payment(self):
        await self.saga.handle_verdict(self.verdict(stock_line()))

        order, err = await self.saga.complete_payment(self.order.order_id)

        self.assertIsNone(err)
        self.assertEqual(order.status, "completed")
        self.assertEqual((await self.events())[-1], "order.completed")
        used, _ = await self.logic.get_daily_promo_usage("alice", "PR1", self.order.created_day)
        self.assertEqual(used, 2)

    async def test_complete_payment_requires_ready_order(self):
        _, err = await self.saga.complete_payment(self.order.order_id)

        self.assertIsInstance(err, StatusConflictError)
        self.assertEqual((await self.status()).status, "pending")

    async def test_override_rejects_unknown_status(self):
        _, err = await self.saga.override_status(self.order.order_id, "shipped")

        self.assertIsInstance(err, ValidationError)
        self.assertEqual((await self.status()).status, "pending")

    async def test_override_of_missing_order(self):
        _, err = await self.saga.override_status("nope", "cancelled")

        self.assertIsInstance(err, OrderNotFoundError)

    async def test_override_cannot_leave_terminal_status(self):
        await self.saga.handle_verdict(self.verdict(stock_line(requested=5, available=1)))

        _, err = await self.saga.override_status(self.order.order_id, "pending")

        self.assertIsInstance(err, StatusConflictError)
        self.assertEqual((await self.status()).status, "cancelled")

    async def test_override_to_completed_records_completed_event(self):
        order, err = await self.saga.override_status(self.order.order_id, OrderStatus.COMPLETED.value)

        self.assertIsNone(err)
        self.assertEqual(order.status, "completed")
        self.assertEqual((await self.events())[-1], "order.completed")

    async def test_override_to_failed_records_manual_reason(self):
        order, err = await self.saga.override_status(self.order.order_id, "failed")

        self.assertIsNone(err)
        self.assertEqual(order.status, "failed")
        self.assertEqual(order.reason, "Order processing failed: manual override")

    async def test_override_to_same_terminal_status_keeps_reason(self):
        await self.saga.handle_verdict(self.verdict(stock_line(requested=5, available=1)))
        before = await self.status()

        order, err = await self.saga.override_status(self.order.order_id, "cancelled")

        self.assertIsNone(err)
        self.assertEqual(order.reason, before.reason)
        self.assertNotEqual(order.reason, "Order cancelled manually")
