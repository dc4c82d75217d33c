from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError
import logging

from common.errors import MessagingError
from common.kafka.messages import Envelope, encode_envelope
from common.kafka.topics_config import Exchange, ROUTING_KEY_HEADER


class KafkaProducerSingleton:
    _instance = None
    _bootstrap_servers = None

    @classmethod
    async def get_instance(cls, bootstrap_servers=None):
        if cls._instance is None:
            cls._bootstrap_servers = bootstrap_servers or cls._bootstrap_servers
            if cls._bootstrap_servers is None:
                raise MessagingError("Kafka producer used before it was configured")
            producer = AIOKafkaProducer(
                bootstrap_servers=cls._bootstrap_servers,
                acks="all",
                enable_idempotence=True,
            )
            try:
                await producer.start()
            except KafkaError as e:
                raise MessagingError(f"Unable to start Kafka producer: {e}") from e
            cls._instance = producer
            logging.info("Kafka Producer started")
        return cls._instance

    @classmethod
    async def send_event(cls, exchange: Exchange, routing_key: str, event_key: str, envelope: Envelope):
        """Publish ``envelope`` on ``exchange``; raises MessagingError when the broker does not acknowledge."""
        producer = await cls.get_instance()
        try:
            await producer.send_and_wait(
                exchange.name,
                key=event_key.encode("utf-8"),
                value=encode_envelope(envelope),
                headers=[(ROUTING_KEY_HEADER, routing_key.encode("utf-8"))],
            )
        except KafkaError as e:
            raise MessagingError(f"Failed to publish {routing_key} for {event_key}: {e}") from e
        logging.info(f"Published {routing_key} on {exchange.name} for {event_key}")

    @classmethod
    def is_started(cls) -> bool:
        return cls._instance is not None

    @classmethod
    async def close(cls):
        if cls._instance:
            await cls._instance.stop()
            logging.info("Kafka Producer stopped")
            cls._instance = None
