"""Order change notifications over Redis pub/sub, consumed by the realtime bridge."""

import json
import logging

import redis

from .settings import settings

logger = logging.getLogger(__name__)

STORE_CHANNEL = "orders:store"

# Redis client for pub/sub
redis_client: redis.Redis | None = None


def get_redis() -> redis.Redis | None:
    global redis_client
    if redis_client is None:
        try:
            redis_client = redis.from_url(settings.redis_url)
            redis_client.ping()
        except redis.RedisError as e:
            logger.warning(f"Redis unavailable, order events disabled: {e}")
            redis_client = None
    return redis_client


def publish_order_update(event: dict, table_id: int | None = None) -> None:
    """Publish an order event.

    Publishes to both:
    - orders:store - for staff screens (all orders)
    - orders:table:{table_id} - for the table's own screen, if table_id provided
    """
    r = get_redis()
    if r is None:
        return
    payload = json.dumps(event, default=str)
    try:
        r.publish(STORE_CHANNEL, payload)
        if table_id is not None:
            r.publish(f"orders:table:{table_id}", payload)
    except redis.RedisError as e:
        # The order change is already committed
        logger.warning(f"Failed to publish {event.get('type')} event: {e}")
