"""
Rate limits for the job endpoints (slowapi, keyed by client IP).
Counters live in Redis when it answers a ping, so every API replica shares
them; otherwise each process counts on its own.
"""
import logging

from slowapi import Limiter
from slowapi.util import get_remote_address

from jobmaster.core.config import settings

logger = logging.getLogger(__name__)


def _storage_uri(redis_url: str) -> str:
    if not redis_url:
        return "memory://"
    try:
        import redis
        redis.from_url(redis_url, socket_connect_timeout=1).ping()
    except Exception as e:
        logger.warning(f"Rate limiter: Redis unreachable ({e}), counting in memory")
        return "memory://"
    return redis_url


limiter = Limiter(
    key_func=get_remote_address,
    enabled=settings.RATE_LIMIT_ENABLED,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
    storage_uri=_storage_uri(settings.REDIS_URL),
)

# Polling is expected to be chatty; submissions less so
JOB_CREATE_LIMIT = settings.RATE_LIMIT_JOB_CREATE
STATUS_LIMIT = settings.RATE_LIMIT_STATUS
