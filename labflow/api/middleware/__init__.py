from labflow.api.middleware.rate_limit import (
    RateLimitMiddleware,
    RateLimiter,
    RateLimitStore,
    InMemoryRateLimitStore,
    RedisRateLimitStore,
)

__all__ = [
    "RateLimitMiddleware",
    "RateLimiter",
    "RateLimitStore",
    "InMemoryRateLimitStore",
    "RedisRateLimitStore",
]
