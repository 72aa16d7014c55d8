"""Async Redis client for rate limiting and event fan-out."""

from redis.asyncio import ConnectionPool, Redis


def create_redis_client(url: str, *, max_connections: int = 20) -> Redis:
    """Create a Redis client backed by its own connection pool."""
    pool = ConnectionPool.from_url(url, max_connections=max_connections, decode_responses=True)
    return Redis(connection_pool=pool)
