import unittest
from unittest.mock import AsyncMock, patch

from aiokafka.errors import KafkaError

from common.errors import MessagingError
from common.kafka.kafkaProducer import KafkaProducerSingleton
from common.kafka.messages import build_envelope, decode_envelope
from common.kafka.topics_config import ORDER_EXCHANGE


class TestKafkaProducer(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.producer = AsyncMock()
        patcher = patch.object(KafkaProducerSingleton, "_instance", self.producer)
        patcher.start()
        self.addCleanup(patcher.stop)

    async def test_send_event_carries_routing_key_header(self):
        envelope = build_envelope("created", {"order_id": "order-1"})

        await KafkaProducerSingleton.send_event(ORDER_EXCHANGE, "order.created", "order-1", envelope)

        args, kwargs = self.producer.send_and_wait.call_args
        self.assertEqual(args, ("order.events",))
        self.assertEqual(kwargs["key"], b"order-1")
        self.assertEqual(kwargs["headers"], [("routing_key", b"order.created")])
        self.assertEqual(decode_envelope(kwargs["value"]).data, {"order_id": "order-1"})

    async def test_broker_failure_becomes_messaging_error(self):
        self.producer.send_and_wait.side_effect = KafkaError()

        with self.assertRaises(MessagingError):
            await KafkaProducerSingleton.send_event(
                ORDER_EXCHANGE, "order.created", "order-1", build_envelope("created", {})
            )
