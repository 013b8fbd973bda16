"""
Redis-backed fixed-window rate limiter for Gateway deployments with
several replicas.
"""

import math
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.logging import get_logger
from .fixed_window import RateLimitDecision, RateLimiter


class RedisFixedWindowRateLimiter(RateLimiter):
    """Distributed fixed-window limiter.

    ``INCR`` is atomic on the server, so replicas sharing one Redis agree on
    the count. The key TTL is the window: it is set when the first request
    creates the key, and repaired if a previous call died between the two
    commands.
    """

    backend = "redis"

    def __init__(self, redis_url: str, limit: int = 100, window_seconds: float = 15 * 60,
                 key_prefix: str = "rate_limit"):
        self.redis_url = redis_url
        self.limit = limit
        self.window_seconds = window_seconds
        self.key_prefix = key_prefix
        self.logger = get_logger("gateway.rate_limiter")
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url)
        return self._redis

    def _make_key(self, client_key: str) -> str:
        """Generate rate limit key."""
        return f"{self.key_prefix}:{client_key}"

    def _fail_open(self) -> RateLimitDecision:
        """Decision used when Redis cannot be reached: the request passes."""
        return RateLimitDecision(
            allowed=True,
            limit=self.limit,
            remaining=self.limit,
            reset_after=self.window_seconds,
        )

    async def check(self, client_key: str) -> RateLimitDecision:
        window = max(1, math.ceil(self.window_seconds))

        try:
            redis_client = await self._get_redis()
        except (RedisError, OSError, ValueError) as e:
            self.logger.error("Rate limit check error", error=str(e))
            return self._fail_open()

        key = self._make_key(client_key)

        try:
            async with redis_client.pipeline(transaction=True) as pipeline:
                pipeline.incr(key)
                pipeline.ttl(key)
                count, ttl = await pipeline.execute()

            if ttl is None or ttl < 0:
                await redis_client.expire(key, window)
                ttl = window
        except (RedisError, OSError) as e:
            self.logger.error("Rate limit check error", error=str(e))
            return self._fail_open()

        count = int(count)
        reset_after = float(max(0, ttl))

        if count > self.limit:
            self.logger.warning(
                "Rate limit exceeded",
                client_key=client_key,
                current_count=count,
                limit=self.limit
            )
            return RateLimitDecision(
                allowed=False,
                limit=self.limit,
                remaining=0,
                reset_after=reset_after,
                retry_after=reset_after,
            )

        return RateLimitDecision(
            allowed=True,
            limit=self.limit,
            remaining=self.limit - count,
            reset_after=reset_after,
        )

    async def reset(self, client_key: str) -> bool:
        """Reset rate limit for a client."""
        try:
            redis_client = await self._get_redis()
            deleted = await redis_client.delete(self._make_key(client_key))
        except (RedisError, OSError) as e:
            self.logger.error("Rate limit reset error", error=str(e))
            return False

        self.logger.info("Rate limit reset", client_key=client_key)
        return bool(deleted)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
