"""
Dramatiq broker configuration.

Redis-based message broker for the cycle job queues, plus the Redis
rate-limiter backend that bounds concurrent jobs per queue.
"""

import dramatiq
from dramatiq.brokers.redis import RedisBroker
from dramatiq.middleware import (
    AgeLimit,
    CurrentMessage,
    Retries,
    ShutdownNotifications,
    TimeLimit,
)
from dramatiq.rate_limits import ConcurrentRateLimiter
from dramatiq.rate_limits.backends import RedisBackend
from loguru import logger

from app.config.settings import settings
from app.utils.redis_utils import get_redis_url, get_redis_url_masked

# Middleware is passed explicitly so none of dramatiq's defaults are doubled
# ShutdownNotifications: Allows workers to gracefully shutdown
# CurrentMessage: Lets actors read the retry count of their message
# Retries: Exponential backoff; per-job limits travel in message options
redis_broker = RedisBroker(
    url=get_redis_url(),
    middleware=[
        AgeLimit(),
        TimeLimit(time_limit=settings.job_time_limit_ms),
        ShutdownNotifications(),
        CurrentMessage(),
        Retries(
            max_retries=settings.job_default_attempts - 1,
            min_backoff=settings.job_backoff_base_ms,
            max_backoff=settings.job_backoff_max_ms,
        ),
    ],
)

# Set as default broker
dramatiq.set_broker(redis_broker)

# Export broker
broker = redis_broker

rate_limit_backend = RedisBackend(url=get_redis_url())

_rate_limiters: dict[str, ConcurrentRateLimiter] = {}


def get_rate_limiter(queue_name: str) -> ConcurrentRateLimiter:
    """
    Get the concurrency limiter of a queue.

    Args:
        queue_name: Queue name

    Returns:
        Limiter allowing ``job_concurrency_limit`` jobs at once
    """
    limiter = _rate_limiters.get(queue_name)
    if limiter is None:
        limiter = ConcurrentRateLimiter(
            rate_limit_backend,
            f"{settings.redis_key_prefix}:concurrency:{queue_name}",
            limit=settings.job_concurrency_limit,
            ttl=settings.job_time_limit_ms,
        )
        _rate_limiters[queue_name] = limiter
    return limiter


logger.info(f"Dramatiq broker initialized: {get_redis_url_masked()}")
logger.info(
    "Middleware enabled: AgeLimit, TimeLimit, ShutdownNotifications, "
    "CurrentMessage, Retries (exponential backoff)"
)
