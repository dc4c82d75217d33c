import logging

from common.config import ServiceConfig
from common.db.redis_db import create_redis, is_healthy
from common.kafka.kafkaProducer import KafkaProducerSingleton
from common.kafka.topics_config import declare_topology
from common.otlp_grcp_config import configure_logging, configure_telemetry
from stock.app_instance import app
from stock.routing import http
from stock.routing.kafka import Kafka
from stock.stock_logic import InventoryLogic
from stock.validator import InventoryValidator

SERVICE_NAME = "stock-service"

configure_logging()

config = ServiceConfig.from_env(SERVICE_NAME)
configure_telemetry(SERVICE_NAME, config.otel_endpoint)

db = create_redis(config)

logic = InventoryLogic(app.logger, db, cache_ttl=config.product_cache_ttl_seconds)
validator = InventoryValidator(logic, KafkaProducerSingleton, app.logger)
kafka = Kafka(app.logger, logic, validator, config.kafka_bootstrap_servers)


async def health_status():
    store_ok = await is_healthy(db)
    broker_ok = KafkaProducerSingleton.is_started() and kafka.is_running()
    status = {
        "service": SERVICE_NAME,
        "status": "healthy" if store_ok and broker_ok else "unhealthy",
        "store": "connected" if store_ok else "disconnected",
        "broker": "connected" if broker_ok else "disconnected",
    }
    return status, store_ok and broker_ok


http.init(logic, health_status)


@app.before_serving
async def startup():
    app.logger.info("Starting Stock Service")
    await declare_topology(
        config.kafka_bootstrap_servers,
        partitions=config.topic_partitions,
        replication_factor=config.topic_replication_factor,
    )
    await KafkaProducerSingleton.get_instance(config.kafka_bootstrap_servers)
    await kafka.init()


@app.after_serving
async def shutdown():
    app.logger.info("Stopping Stock Service")
    await kafka.close()
    await KafkaProducerSingleton.close()
    await db.aclose()


if __name__ == '__main__':
    app.run(host="0.0.0.0", port=8000, debug=True)
    app.logger.setLevel(logging.INFO)
    hypercorn_logger = logging.getLogger('hypercorn.error')
    app.logger.handlers = hypercorn_logger.handlers
    app.logger.setLevel(hypercorn_logger.level)
else:
    hypercorn_logger = logging.getLogger('hypercorn.error')
    app.logger.handlers = hypercorn_logger.handlers
    app.logger.setLevel(hypercorn_logger.level)
