import logging

from common.config import ServiceConfig
from common.db.redis_db import create_redis, is_healthy
from common.kafka.kafkaProducer import KafkaProducerSingleton
from common.kafka.topics_config import declare_topology
from common.otlp_grcp_config import configure_logging, configure_telemetry
from order.app_instance import app
from order.order_logic import OrderLogic
from order.outbox import OutboxDispatcher
from order.routing import http
from order.routing.kafka import Kafka
from order.saga.correlation import CorrelationStore, RedisCorrelationStore
from order.saga.orchestrator import SagaOrchestrator
from order.saga.reconciliation import PendingOrderReconciler

SERVICE_NAME = "order-service"

configure_logging()

config = ServiceConfig.from_env(SERVICE_NAME)
configure_telemetry(SERVICE_NAME, config.otel_endpoint)

db = create_redis(config)


def create_correlation_store(config: ServiceConfig):
    if config.correlation_backend == "redis":
        app.logger.info("Using redis correlation store")
        return RedisCorrelationStore(
            db,
            staleness_window=config.correlation_staleness_seconds,
            sweep_interval=config.correlation_sweep_interval_seconds,
            logger=app.logger,
        )
    return CorrelationStore(
        staleness_window=config.correlation_staleness_seconds,
        sweep_interval=config.correlation_sweep_interval_seconds,
        logger=app.logger,
    )


logic = OrderLogic(app.logger, db)
correlation = create_correlation_store(config)
orchestrator = SagaOrchestrator(logic, correlation, app.logger)
outbox = OutboxDispatcher(db, KafkaProducerSingleton, poll_interval=config.outbox_poll_interval_seconds,
                          logger=app.logger)
reconciler = PendingOrderReconciler(
    logic, pending_timeout=config.pending_timeout_seconds, interval=config.reconcile_interval_seconds,
    logger=app.logger,
)
kafka = Kafka(app.logger, orchestrator, config.kafka_bootstrap_servers)


async def health_status():
    store_ok = await is_healthy(db)
    broker_ok = KafkaProducerSingleton.is_started() and kafka.is_running()
    status = {
        "service": SERVICE_NAME,
        "status": "healthy" if store_ok and broker_ok else "unhealthy",
        "store": "connected" if store_ok else "disconnected",
        "broker": "connected" if broker_ok else "disconnected",
        "pending_sagas": len(correlation),
        "outbox_backlog": await outbox.pending() if store_ok else None,
    }
    return status, store_ok and broker_ok


http.init(logic, orchestrator, health_status)


@app.before_serving
async def startup():
    app.logger.info("Starting Order Service")
    await declare_topology(
        config.kafka_bootstrap_servers,
        partitions=config.topic_partitions,
        replication_factor=config.topic_replication_factor,
    )
    await KafkaProducerSingleton.get_instance(config.kafka_bootstrap_servers)
    await kafka.init()
    outbox.start()
    correlation.start()
    reconciler.start()


@app.after_serving
async def shutdown():
    app.logger.info("Stopping Order Service")
    await reconciler.stop()
    await correlation.stop()
    await outbox.stop()
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
