"""
Rate limiting package for the Gateway.

Holds the fixed-window limiters that bound requests per client identity.
The gateway talks to them through the ``RateLimiter`` interface, so the
in-memory counter map can be swapped for the Redis-backed one without
touching call sites.
"""

from .fixed_window import FixedWindowRateLimiter, RateLimitDecision, RateLimiter, WindowCounter
from .redis_window import RedisFixedWindowRateLimiter

__all__ = [
    "FixedWindowRateLimiter",
    "RateLimitDecision",
    "RateLimiter",
    "RedisFixedWindowRateLimiter",
    "WindowCounter",
    "build_rate_limiter",
]


def build_rate_limiter(config) -> RateLimiter:
    """Create the limiter selected by ``rate_limit_backend``."""
    if config.rate_limit_backend == "redis":
        return RedisFixedWindowRateLimiter(
            config.redis_url,
            limit=config.rate_limit_max_requests,
            window_seconds=config.rate_limit_window_seconds,
        )
    return FixedWindowRateLimiter(
        limit=config.rate_limit_max_requests,
        window_seconds=config.rate_limit_window_seconds,
        max_keys=config.rate_limit_max_keys,
    )
