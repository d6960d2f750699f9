"""Sliding-window rate limiting using Redis sorted sets.

Each client key owns a sorted set of request timestamps. A request is
admitted when the number of entries inside the trailing window is below the
limit; rejected requests are removed again so they do not extend the window.
"""

import time
import uuid
from dataclasses import dataclass

import redis.asyncio as redis
from fastapi import Request

from agent_vendor.core.config import get_settings
from agent_vendor.db.redis import get_redis


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at_ms: int

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at_ms),
        }


class SlidingWindowRateLimiter:
    """Per-client sliding-window log limiter."""

    KEY_PREFIX = "ratelimit:"

    def __init__(
        self,
        redis_client: redis.Redis,
        prefix: str,
        limit: int,
        window_seconds: int,
    ):
        self.redis = redis_client
        self.prefix = prefix
        self.limit = limit
        self.window_ms = window_seconds * 1000

    def _key(self, client_key: str) -> str:
        return f"{self.KEY_PREFIX}{self.prefix}:{client_key}"

    async def limit_request(self, client_key: str, now_ms: int | None = None) -> RateLimitResult:
        """Record one request for ``client_key`` and report whether it is allowed."""
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        key = self._key(client_key)
        member = f"{now_ms}:{uuid.uuid4().hex}"
        window_start = now_ms - self.window_ms

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, 0, window_start)
            pipe.zadd(key, {member: now_ms})
            pipe.zcard(key)
            pipe.zrange(key, 0, 0, withscores=True)
            pipe.pexpire(key, self.window_ms)
            _, _, count, oldest, _ = await pipe.execute()

        oldest_ms = int(oldest[0][1]) if oldest else now_ms
        reset_at_ms = oldest_ms + self.window_ms

        if count > self.limit:
            await self.redis.zrem(key, member)
            return RateLimitResult(
                allowed=False,
                limit=self.limit,
                remaining=0,
                reset_at_ms=reset_at_ms,
            )

        return RateLimitResult(
            allowed=True,
            limit=self.limit,
            remaining=max(self.limit - count, 0),
            reset_at_ms=reset_at_ms,
        )


def get_client_ip(request: Request) -> str:
    """Return the first X-Forwarded-For hop, else the socket peer, else loopback."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return "127.0.0.1"


def get_chat_rate_limiter() -> SlidingWindowRateLimiter:
    settings = get_settings()
    return SlidingWindowRateLimiter(
        get_redis(),
        prefix="chat",
        limit=settings.chat_rate_limit_requests,
        window_seconds=settings.chat_rate_limit_window_seconds,
    )
