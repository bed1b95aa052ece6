# core/redis_client.py
"""
Shared Redis connection pool for the Redis-backed stores (token buckets,
duplicate markers, JTIs, job records). Connects on first use.
"""

import threading
from typing import Optional

import redis
from redis.connection import ConnectionPool

from gateway.core.config import Settings, get_settings
from gateway.core.logger import logger

_lock = threading.Lock()
_pool: Optional[ConnectionPool] = None
_client: Optional[redis.Redis] = None


def _pool_kwargs(settings: Settings) -> dict:
    kwargs = {
        "host": settings.REDIS_HOST,
        "port": settings.REDIS_PORT,
        "db": settings.REDIS_DB,
        "decode_responses": True,
        "socket_timeout": settings.REDIS_SOCKET_TIMEOUT,
        "socket_connect_timeout": settings.REDIS_SOCKET_CONNECT_TIMEOUT,
        "max_connections": settings.REDIS_MAX_CONNECTIONS,
        "retry_on_timeout": True,
        "health_check_interval": 30,
    }
    if settings.REDIS_SSL:
        kwargs["connection_class"] = redis.SSLConnection
        kwargs["ssl_cert_reqs"] = None
    if settings.REDIS_PASSWORD:
        kwargs["password"] = settings.REDIS_PASSWORD
    return kwargs


def get_redis() -> redis.Redis:
    """
    Client bound to the shared pool.

    Raises:
        redis.ConnectionError: Redis is unreachable on first connect
    """
    global _pool, _client
    with _lock:
        if _client is None:
            settings = get_settings()
            logger.info(
                "Connecting to Redis",
                extra={"host": settings.REDIS_HOST, "port": settings.REDIS_PORT, "ssl": settings.REDIS_SSL}
            )
            pool = ConnectionPool(**_pool_kwargs(settings))
            client = redis.Redis(connection_pool=pool)
            try:
                client.ping()
            except redis.RedisError as e:
                pool.disconnect()
                logger.error(f"Failed to connect to Redis: {e}")
                raise
            _pool, _client = pool, client
        return _client


def close_redis() -> None:
    """Drop the pool (application shutdown)."""
    global _pool, _client
    with _lock:
        if _pool is not None:
            _pool.disconnect()
            logger.info("Redis connection pool closed")
        _pool, _client = None, None
