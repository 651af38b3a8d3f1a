"""Redis connection utilities.

Builds Redis clients and keys from settings so the broker, the job queue
leases and the rate limiter all talk to the same instance.
"""

import redis.asyncio as redis

from app.config.settings import settings


def get_redis_client() -> redis.Redis:
    """
    Create an async Redis client with settings from config.

    Returns:
        redis.Redis: Configured client with decode_responses=True
    """
    return redis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        password=settings.redis_password,
        db=settings.redis_db,
        decode_responses=True,
    )


def get_redis_url() -> str:
    """
    Build Redis URL from settings.

    WARNING: contains the password in plaintext; log get_redis_url_masked().

    Returns:
        str: URL in format redis://[:[password]@]host:port/db
    """
    if settings.redis_password:
        return (
            f"redis://:{settings.redis_password}@"
            f"{settings.redis_host}:{settings.redis_port}/{settings.redis_db}"
        )
    return f"redis://{settings.redis_host}:{settings.redis_port}/{settings.redis_db}"


def get_redis_url_masked() -> str:
    """Build Redis URL with the password replaced for safe logging."""
    auth = ":****@" if settings.redis_password else ""
    return f"redis://{auth}{settings.redis_host}:{settings.redis_port}/{settings.redis_db}"


def redis_key(*parts: str) -> str:
    """
    Build a namespaced Redis key.

    Example:
        >>> redis_key("lease", "group-1")
        'roscapay:lease:group-1'
    """
    return ":".join((settings.redis_key_prefix, *parts))
