"""Tests for the rate limiting middleware."""

import asyncio
from uuid import uuid4

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from labflow.api.middleware.rate_limit import (
    InMemoryRateLimitStore,
    RateLimiter,
    RateLimitMiddleware,
    RedisRateLimitStore,
    build_store,
)
from labflow.core.config import Settings
from labflow.core.security import create_access_token


def limited_settings(**overrides):
    values = dict(rate_limit_enabled=True, rate_limit_default=2, rate_limit_auth=3, rate_limit_window=60)
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def limited_client():
    app = FastAPI()
    app.add_middleware(
        RateLimitMiddleware,
        limiter=RateLimiter(InMemoryRateLimitStore(), limited_settings()),
    )

    @app.get("/ping")
    def ping():
        return {"ok": True}

    @app.get("/health")
    def health():
        return {"status": "healthy"}

    return TestClient(app)


class TestRateLimiter:

    def test_sliding_window(self):
        limiter = RateLimiter(InMemoryRateLimitStore(), limited_settings())

        async def run():
            results = []
            for now in (100.0, 101.0, 102.0, 161.5):
                allowed, remaining, _, _ = await limiter.is_allowed("10.0.0.1", now=now)
                results.append((allowed, remaining))
            return results

        assert asyncio.run(run()) == [(True, 1), (True, 0), (False, 0), (True, 0)]

    def test_categories_are_separate(self):
        limiter = RateLimiter(InMemoryRateLimitStore(), limited_settings(rate_limit_default=1))

        async def run():
            first = await limiter.is_allowed("client", category="default", now=10.0)
            second = await limiter.is_allowed("client", category="auth", now=10.0)
            return first[0], second[0]

        assert asyncio.run(run()) == (True, True)

    def test_idle_clients_are_forgotten(self):
        store = InMemoryRateLimitStore()

        async def run():
            await store.hit("rl:default:a", 100.0, 60)
            await store.hit("rl:default:b", 150.0, 60)
            await store.hit("rl:default:c", 170.0, 60)
            keys = set(store._hits)
            return keys, await store.hit("rl:default:b", 175.0, 60)

        keys, count = asyncio.run(run())
        assert keys == {"rl:default:b", "rl:default:c"}
        assert count == 1

    def test_build_store(self):
        assert isinstance(build_store(limited_settings()), InMemoryRateLimitStore)
        assert isinstance(build_store(limited_settings(rate_limit_backend="redis")), RedisRateLimitStore)


class TestRateLimitMiddleware:

    def test_anonymous_limit(self, limited_client):
        assert limited_client.get("/ping").status_code == 200
        second = limited_client.get("/ping")
        assert second.headers["X-RateLimit-Remaining"] == "0"

        blocked = limited_client.get("/ping")
        assert blocked.status_code == 429
        assert blocked.json() == {"ok": False, "message": "Rate limit exceeded. Please try again later."}
        assert int(blocked.headers["Retry-After"]) >= 1

    def test_authenticated_callers_counted_separately(self, limited_client):
        for _ in range(2):
            limited_client.get("/ping")
        assert limited_client.get("/ping").status_code == 429

        headers = {"Authorization": f"Bearer {create_access_token(uuid4())}"}
        responses = [limited_client.get("/ping", headers=headers).status_code for _ in range(4)]
        assert responses == [200, 200, 200, 429]

    def test_health_is_excluded(self, limited_client):
        assert all(limited_client.get("/health").status_code == 200 for _ in range(5))

    def test_disabled(self):
        app = FastAPI()
        app.add_middleware(
            RateLimitMiddleware,
            limiter=RateLimiter(InMemoryRateLimitStore(), limited_settings(rate_limit_enabled=False)),
        )

        @app.get("/ping")
        def ping():
            return {"ok": True}

        client = TestClient(app)
        assert all(client.get("/ping").status_code == 200 for _ in range(5))
