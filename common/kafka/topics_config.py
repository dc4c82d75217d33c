"""
Message bus topology.

Exchanges are topic exchanges realised as Kafka topics. The routing key of a
message travels in the ``routing_key`` header, the message key is the order
id so every event of one order lands on the same partition. A queue is a
Kafka consumer group whose binding patterns filter the exchange by routing
key, with the usual topic wildcards: ``*`` matches exactly one word and
``#`` matches zero or more words.
"""
import logging

from aiokafka.admin import AIOKafkaAdminClient, NewTopic
from aiokafka.errors import KafkaError, TopicAlreadyExistsError
from msgspec import Struct

from common.errors import MessagingError

ROUTING_KEY_HEADER = "routing_key"


class Exchange(Struct, frozen=True):
    name: str
    type: str = "topic"
    durable: bool = True


class Queue(Struct, frozen=True):
    name: str
    exchange: Exchange
    bindings: tuple[str, ...]
    durable: bool = True

    def accepts(self, routing_key: str) -> bool:
        return any(routing_key_matches(pattern, routing_key) for pattern in self.bindings)


ORDER_EXCHANGE = Exchange("order.events")
STOCK_EXCHANGE = Exchange("stock.events")
EXCHANGES = (ORDER_EXCHANGE, STOCK_EXCHANGE)

ORDER_ROUTING_PREFIX = "order"
STOCK_ROUTING_PREFIX = "stock"

# inventory service
PRODUCT_ORDER_CREATED_QUEUE = Queue(
    "product.order.created", ORDER_EXCHANGE, ("order.created",)
)
PRODUCT_ORDER_COMPLETED_QUEUE = Queue(
    "product.order.completed", ORDER_EXCHANGE, ("order.completed", "order.updated")
)
# order service
ORDER_STOCK_VALIDATION_QUEUE = Queue(
    "order.stock.validation.response", STOCK_EXCHANGE, ("stock.validation.response",)
)

QUEUES = (PRODUCT_ORDER_CREATED_QUEUE, PRODUCT_ORDER_COMPLETED_QUEUE, ORDER_STOCK_VALIDATION_QUEUE)


def order_routing_key(event_type: str) -> str:
    return f"{ORDER_ROUTING_PREFIX}.{event_type}"


def stock_routing_key(event_type: str) -> str:
    return f"{STOCK_ROUTING_PREFIX}.{event_type}"


def routing_key_matches(pattern: str, routing_key: str) -> bool:
    return _match(pattern.split("."), routing_key.split("."))


def _match(pattern: list[str], words: list[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        # '#' swallows zero or more words
        return any(_match(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match(rest, words[1:])
    return False


async def declare_topology(bootstrap_servers: str, partitions: int = 3, replication_factor: int = 1,
                           exchanges: tuple[Exchange, ...] = EXCHANGES):
    """Create the exchange topics if they are missing. Safe to call from every service on startup."""
    admin = AIOKafkaAdminClient(bootstrap_servers=bootstrap_servers)
    try:
        await admin.start()
        existing = set(await admin.list_topics())
        missing = [
            NewTopic(name=exchange.name, num_partitions=partitions, replication_factor=replication_factor)
            for exchange in exchanges if exchange.name not in existing
        ]
        if missing:
            try:
                await admin.create_topics(missing)
            except TopicAlreadyExistsError:
                # another service won the race
                pass
            logging.info(f"Declared exchanges: {[topic.name for topic in missing]}")
    except KafkaError as e:
        raise MessagingError(f"Unable to declare topology: {e}") from e
    finally:
        await admin.close()
