import msgspec

from common.kafka.events_config import EVENT_ORDER_COMPLETED, EVENT_ORDER_CREATED, EVENT_ORDER_UPDATED
from common.kafka.kafkaConsumer import KafkaQueueConsumer
from common.kafka.messages import Envelope, OrderEventData, decode_data
from common.kafka.topics_config import PRODUCT_ORDER_COMPLETED_QUEUE, PRODUCT_ORDER_CREATED_QUEUE


class Kafka:
    def __init__(self, logger, logic, validator, bootstrap_servers: str) -> None:
        self.logger = logger
        self.logic = logic
        self.validator = validator
        self.consumers = [
            KafkaQueueConsumer(PRODUCT_ORDER_CREATED_QUEUE, bootstrap_servers, self.handle_created_event),
            KafkaQueueConsumer(PRODUCT_ORDER_COMPLETED_QUEUE, bootstrap_servers, self.handle_completed_event),
        ]

    def decode_order(self, envelope: Envelope) -> OrderEventData | None:
        try:
            return decode_data(envelope, OrderEventData)
        except msgspec.ValidationError as e:
            self.logger.error(f"Dropping malformed {envelope.event_type} event: {e}")
            return None

    async def handle_created_event(self, envelope: Envelope, routing_key: str):
        if envelope.event_type != EVENT_ORDER_CREATED:
            self.logger.info(f"Event type not handled on {routing_key}: {envelope.event_type}")
            return
        order = self.decode_order(envelope)
        if order is None:
            return
        self.logger.info(f"Received created event for order {order.order_id}")
        await self.validator.handle_order_created(order)

    async def handle_completed_event(self, envelope: Envelope, routing_key: str):
        if envelope.event_type not in (EVENT_ORDER_COMPLETED, EVENT_ORDER_UPDATED):
            self.logger.info(f"Event type not handled on {routing_key}: {envelope.event_type}")
            return
        order = self.decode_order(envelope)
        if order is None:
            return
        if order.order_status != "completed":
            return
        self.logger.info(f"Received completed order {order.order_id}, deducting stock")
        _, err = await self.logic.deduct_for_order(order.order_id, order.items)
        if err:
            # raising requeues the event
            raise err

    async def init(self):
        self.logger.info("Initializing Kafka")
        for consumer in self.consumers:
            await consumer.start()

    def is_running(self) -> bool:
        return all(consumer.is_running() for consumer in self.consumers)

    async def close(self):
        self.logger.info("Closing Kafka")
        for consumer in self.consumers:
            await consumer.close()
