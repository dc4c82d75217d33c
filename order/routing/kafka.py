import msgspec

from common.kafka.events_config import EVENT_STOCK_VALIDATION_RESPONSE
from common.kafka.kafkaConsumer import KafkaQueueConsumer
from common.kafka.messages import Envelope, ValidationResponse, decode_data
from common.kafka.topics_config import ORDER_STOCK_VALIDATION_QUEUE


class Kafka:
    def __init__(self, logger, orchestrator, bootstrap_servers: str) -> None:
        self.logger = logger
        self.orchestrator = orchestrator
        self.consumer = KafkaQueueConsumer(ORDER_STOCK_VALIDATION_QUEUE, bootstrap_servers, self.handle_event)

    async def handle_event(self, envelope: Envelope, routing_key: str):
        if envelope.event_type != EVENT_STOCK_VALIDATION_RESPONSE:
            self.logger.info(f"Event type not handled on {routing_key}: {envelope.event_type}")
            return
        try:
            response = decode_data(envelope, ValidationResponse)
        except msgspec.ValidationError as e:
            self.logger.error(f"Dropping malformed validation response: {e}")
            return
        self.logger.info(f"Received stock validation response for order {response.order_id}")
        await self.orchestrator.handle_verdict(response.validation_result)

    async def init(self):
        self.logger.info("Initializing Kafka")
        await self.consumer.start()

    def is_running(self) -> bool:
        return self.consumer.is_running()

    async def close(self):
        self.logger.info("Closing Kafka")
        await self.consumer.close()
