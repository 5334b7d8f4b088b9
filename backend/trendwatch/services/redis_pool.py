"""
Shared Redis connection pool for pass locks.

One lazily created pool per process; callers get None when Redis is
unreachable and must carry on without it.
"""
import logging
from typing import Optional

from redis import ConnectionPool, Redis
from redis.exceptions import RedisError

from ..config import settings

logger = logging.getLogger(__name__)

_pool: Optional[ConnectionPool] = None


def get_redis_pool() -> Optional[ConnectionPool]:
    """
    Get the shared Redis connection pool (singleton).

    Creates the pool on first call and verifies it with a ping.
    Returns None if Redis cannot be reached.
    """
    global _pool

    if _pool is not None:
        return _pool

    try:
        pool = ConnectionPool(
            host=settings.redis_host,
            port=settings.redis_port,
            db=settings.lock_redis_db,
            max_connections=10,
            socket_connect_timeout=2,
            socket_timeout=2,
            decode_responses=True,
        )
        Redis(connection_pool=pool).ping()
    except (RedisError, OSError) as e:
        logger.warning(f"Failed to create Redis connection pool: {e}")
        return None

    _pool = pool
    logger.info(
        f"Redis connection pool initialized: "
        f"{settings.redis_host}:{settings.redis_port}/db{settings.lock_redis_db}"
    )
    return _pool


def get_redis_client() -> Optional[Redis]:
    """Redis client on the shared pool, or None when the pool is unavailable."""
    pool = get_redis_pool()
    if pool is None:
        return None
    return Redis(connection_pool=pool)


def reset_pool() -> None:
    """Disconnect and forget the pool (tests, reconnection)."""
    global _pool

    if _pool is not None:
        try:
            _pool.disconnect()
            logger.info("Redis connection pool disconnected")
        except (RedisError, OSError) as e:
            logger.warning(f"Error disconnecting pool: {e}")
        finally:
            _pool = None
