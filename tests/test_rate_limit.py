"""
Tests for the token-bucket rate limiter middleware
"""
import pytest
import redis
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from utils.rate_limit import RateLimiterMiddleware, connect_redis


class BrokenRedis:
    def get(self, key):
        raise redis.ConnectionError("connection refused")

    def setex(self, key, ttl, value):
        raise redis.ConnectionError("connection refused")


def build_app(**middleware_kwargs):
    app = FastAPI()
    app.add_middleware(RateLimiterMiddleware, **middleware_kwargs)

    @app.get("/ping")
    async def ping():
        return {"ok": True}

    @app.post("/api/billing/webhook")
    async def webhook():
        return {"ok": True}

    return app


async def hit(app, path="/ping", method="get", headers=None, times=1):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        return [(await ac.request(method, path, headers=headers)).status_code for _ in range(times)]


@pytest.mark.asyncio
async def test_bucket_empties_after_capacity():
    app = build_app(requests_per_minute=3)

    assert await hit(app, times=4) == [200, 200, 200, 429]


@pytest.mark.asyncio
async def test_buckets_are_per_user():
    app = build_app(requests_per_minute=1)

    assert await hit(app, headers={"X-User-Id": "a"}, times=2) == [200, 429]
    assert await hit(app, headers={"X-User-Id": "b"}) == [200]


@pytest.mark.asyncio
async def test_webhook_is_never_throttled():
    app = build_app(requests_per_minute=1)

    assert await hit(app, path="/api/billing/webhook", method="post", times=3) == [200, 200, 200]


@pytest.mark.asyncio
async def test_redis_failure_falls_back_to_memory():
    app = build_app(requests_per_minute=2, redis_client=BrokenRedis())

    assert await hit(app, times=3) == [200, 200, 429]


def test_connect_redis_without_url_returns_none():
    assert connect_redis(None) is None
