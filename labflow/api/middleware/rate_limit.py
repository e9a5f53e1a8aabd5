"""Rate limiting middleware for FastAPI.

Sliding-window limits per client behind a pluggable store:
- InMemoryRateLimitStore for a single process and for tests
- RedisRateLimitStore for distributed deployments

Features:
- Per-user limits for requests carrying a valid bearer token
- Per-IP limits for anonymous requests
- HTTP 429 responses with Retry-After header
- Rate limit headers (X-RateLimit-*)
- Excludes health check endpoints
"""

import hashlib
import logging
import time
from collections import defaultdict, deque
from typing import Deque, Dict, Optional, Tuple

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
import redis.asyncio as redis

from labflow.core.config import Settings, get_settings
from labflow.core.security import decode_token

logger = logging.getLogger(__name__)

# Paths excluded from rate limiting
EXCLUDED_PATHS = {
    "/health",
    "/health/live",
    "/health/ready",
}


class RateLimitStore:
    """Records hits and reports how many fell inside the window."""

    async def hit(self, key: str, now: float, window: int) -> int:
        """Record one hit and return the number of earlier hits in the window."""
        raise NotImplementedError

    async def close(self) -> None:
        return None


class InMemoryRateLimitStore(RateLimitStore):
    def __init__(self):
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._last_sweep = 0.0

    async def hit(self, key: str, now: float, window: int) -> int:
        if now - self._last_sweep >= window:
            self._sweep(now - window)
            self._last_sweep = now

        hits = self._hits[key]
        while hits and hits[0] <= now - window:
            hits.popleft()
        count = len(hits)
        hits.append(now)
        return count

    def _sweep(self, cutoff: float) -> None:
        """Drop clients whose newest hit has left the window."""
        stale = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for key in stale:
            del self._hits[key]


class RedisRateLimitStore(RateLimitStore):
    """
    Sorted-set sliding window in Redis.

    Falls back to allowing requests if Redis is unavailable.
    """

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self._redis: Optional[redis.Redis] = None

    async def get_redis(self) -> Optional[redis.Redis]:
        """Get or create Redis connection."""
        if self._redis is None:
            try:
                self._redis = redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_connect_timeout=2,
                    socket_timeout=2,
                )
                await self._redis.ping()
            except Exception:
                logger.warning("Redis unavailable for rate limiting at %s", self.redis_url)
                self._redis = None
        return self._redis

    async def hit(self, key: str, now: float, window: int) -> int:
        r = await self.get_redis()
        if r is None:
            return 0

        try:
            async with r.pipeline(transaction=True) as pipe:
                # Remove old entries
                await pipe.zremrangebyscore(key, 0, now - window)
                # Count current requests
                await pipe.zcard(key)
                # Add current request
                await pipe.zadd(key, {f"{now:.6f}": now})
                await pipe.expire(key, window)
                results = await pipe.execute()
            return int(results[1])
        except Exception:
            logger.warning("Rate limit check failed, allowing request", exc_info=True)
            return 0

    async def close(self) -> None:
        if self._redis:
            await self._redis.close()


def build_store(settings: Settings) -> RateLimitStore:
    if settings.rate_limit_backend == "redis":
        return RedisRateLimitStore(settings.redis_url)
    return InMemoryRateLimitStore()


class RateLimiter:
    """Applies configured limits on top of a RateLimitStore."""

    def __init__(self, store: Optional[RateLimitStore] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.store = store or build_store(self.settings)
        self.default_limit = self.settings.rate_limit_default
        self.auth_limit = self.settings.rate_limit_auth
        self.window = self.settings.rate_limit_window

    def _get_key(self, identifier: str, category: str = "default") -> str:
        # Hash the identifier for privacy
        hashed = hashlib.sha256(identifier.encode()).hexdigest()[:16]
        return f"ratelimit:{category}:{hashed}"

    async def is_allowed(
        self,
        identifier: str,
        category: str = "default",
        limit: Optional[int] = None,
        now: Optional[float] = None,
    ) -> Tuple[bool, int, int, int]:
        """
        Check if request is allowed under rate limit.

        Returns:
            Tuple of (allowed, remaining, limit, reset_time)
        """
        limit = limit or self.default_limit
        now = now if now is not None else time.time()
        current_count = await self.store.hit(self._get_key(identifier, category), now, self.window)
        reset_time = int(now) + self.window

        if current_count >= limit:
            return False, 0, limit, reset_time
        return True, max(0, limit - current_count - 1), limit, reset_time


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    FastAPI middleware for rate limiting.

    Authenticated callers are keyed by user id, anonymous ones by IP.
    """

    def __init__(self, app, limiter: Optional[RateLimiter] = None):
        super().__init__(app)
        self.limiter = limiter or RateLimiter()

    async def dispatch(self, request: Request, call_next) -> Response:
        if not self.limiter.settings.rate_limit_enabled or request.url.path in EXCLUDED_PATHS:
            return await call_next(request)

        identifier, limit, category = self._get_rate_params(request)
        allowed, remaining, total, reset_time = await self.limiter.is_allowed(
            identifier=identifier,
            category=category,
            limit=limit,
        )

        if not allowed:
            retry_after = reset_time - int(time.time())
            logger.info("Rate limit exceeded for %s client", category)
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"ok": False, "message": "Rate limit exceeded. Please try again later."},
                headers={
                    "Retry-After": str(max(1, retry_after)),
                    "X-RateLimit-Limit": str(total),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(reset_time),
                },
            )

        response = await call_next(request)

        response.headers["X-RateLimit-Limit"] = str(total)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        response.headers["X-RateLimit-Reset"] = str(reset_time)
        return response

    def _get_rate_params(self, request: Request) -> Tuple[str, int, str]:
        """
        Determine rate limit parameters based on request.

        Returns:
            Tuple of (identifier, limit, category)
        """
        auth = request.headers.get("authorization", "")
        if auth.lower().startswith("bearer "):
            user_id = decode_token(auth[7:].strip())
            if user_id:
                return str(user_id), self.limiter.auth_limit, "auth"

        return self._get_client_ip(request), self.limiter.default_limit, "default"

    def _get_client_ip(self, request: Request) -> str:
        """Extract client IP from request, handling proxies."""
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()

        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip

        if request.client:
            return request.client.host

        return "unknown"
