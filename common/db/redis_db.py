import logging

from redis.asyncio import Redis

from common.config import ServiceConfig


def create_redis(config: ServiceConfig) -> Redis:
    logging.info(f"Connecting to redis at {config.redis_host}:{config.redis_port}/{config.redis_db}")
    return Redis(
        host=config.redis_host,
        port=config.redis_port,
        password=config.redis_password,
        db=config.redis_db,
    )


async def is_healthy(db: Redis) -> bool:
    try:
        return bool(await db.ping())
    except Exception as e:
        logging.warning(f"Redis health check failed: {e}")
        return False
