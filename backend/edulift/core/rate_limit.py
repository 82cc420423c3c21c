"""Shared rate limiter instance.

Counters live in Redis when it answers a ping at startup, otherwise in
process memory (development and tests).
"""

import logging

import redis as sync_redis
from slowapi import Limiter
from slowapi.util import get_remote_address

from edulift.config import settings

logger = logging.getLogger(__name__)


def _create_limiter() -> Limiter:
    try:
        client = sync_redis.from_url(settings.REDIS_URL, socket_connect_timeout=1)
        client.ping()
        client.close()
        logger.info("Rate limiter: Redis storage (%s)", settings.REDIS_URL)
        return Limiter(key_func=get_remote_address, storage_uri=settings.REDIS_URL)
    except Exception:
        logger.warning("Rate limiter: Redis unavailable, using in-memory storage")
        return Limiter(key_func=get_remote_address)


limiter = _create_limiter()
