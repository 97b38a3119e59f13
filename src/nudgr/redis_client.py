"""Redis connection pool used by rate limiting and the background sweeper."""

import redis.asyncio as redis

_pool: redis.Redis | None = None


async def init_redis(url: str, *, max_connections: int = 20) -> None:
    """Create the shared Redis client. No connection is opened until first use."""
    global _pool  # noqa: PLW0603
    _pool = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=max_connections,
    )


async def close_redis() -> None:
    global _pool  # noqa: PLW0603
    if _pool is not None:
        await _pool.aclose()
        _pool = None


def redis_available() -> bool:
    """True once init_redis() has run. Middleware uses this to degrade gracefully."""
    return _pool is not None


def get_redis() -> redis.Redis:
    """Get the Redis client (FastAPI dependency)."""
    if _pool is None:
        msg = "Redis not initialized. Call init_redis() first."
        raise RuntimeError(msg)
    return _pool
