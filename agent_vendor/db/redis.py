"""Redis client backing the chat rate limiter and the credit-balance cache."""

import redis.asyncio as redis

from agent_vendor.core.config import get_settings

_redis: redis.Redis | None = None


async def init_redis(url: str | None = None) -> None:
    global _redis

    if _redis is not None:
        return

    _redis = redis.from_url(
        url or get_settings().redis_url,
        encoding="utf-8",
        decode_responses=True,
        health_check_interval=30,
    )
    await _redis.ping()


async def close_redis() -> None:
    global _redis

    if _redis is not None:
        await _redis.aclose()
        _redis = None


def get_redis() -> redis.Redis:
    """Return the shared client; raises RuntimeError before init_redis()."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis


async def ping_redis() -> None:
    if not await get_redis().ping():
        raise ConnectionError("Redis did not answer PING")
