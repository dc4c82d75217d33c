import asyncio
import logging
from redis.exceptions import ConnectionError, TimeoutError

TRANSIENT_ERRORS = (ConnectionError, TimeoutError)


async def retry_db_call(func, *args, retries=5, delay=0.5, **kwargs):
    """Await ``func`` retrying transient connection errors; other redis errors surface at once."""
    for attempt in range(retries):
        try:
            return await func(*args, **kwargs)
        except TRANSIENT_ERRORS as e:
            logging.info(f"Attempt {attempt + 1} failed: {e},  {type(e).__name__}:")
            if attempt < retries - 1:
                await asyncio.sleep(delay)
                continue
            raise
