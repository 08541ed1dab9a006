import json
from time import time
from typing import Dict, Iterable, Optional, Tuple
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
import logging

import redis

from config.settings import settings

logger = logging.getLogger(__name__)

# Gateway callbacks arrive in bursts and must never be throttled
EXEMPT_PATHS = ("/api/billing/webhook",)


def connect_redis(redis_url: Optional[str]) -> Optional[redis.Redis]:
    """
    Redis client for the shared token buckets, or None to use per-process buckets.
    """
    if not redis_url:
        logger.info("REDIS_URL not set. Using in-memory rate limiting.")
        return None
    try:
        client = redis.from_url(redis_url, decode_responses=True)
        client.ping()
    except redis.RedisError as e:
        logger.warning(f"Redis connection failed: {e}. Falling back to in-memory rate limiting.")
        return None
    logger.info("Redis connected successfully for rate limiting")
    return client


class RateLimiterMiddleware(BaseHTTPMiddleware):
    """
    Distributed rate limiter using Redis (with fallback to in-memory).
    Uses Token Bucket Algorithm, keyed by user id when the caller sends one
    and by client IP otherwise.
    """

    def __init__(self, app, requests_per_minute: Optional[int] = None,
                 redis_client: Optional[redis.Redis] = None, exempt_paths: Iterable[str] = EXEMPT_PATHS):
        super().__init__(app)
        self.capacity = requests_per_minute or settings.rate_limit_per_minute
        self.refill_time_window = 60.0
        self.exempt_paths = tuple(exempt_paths)
        # Fallback: in-memory storage (key -> (tokens, last_refill_ts))
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._redis = redis_client

    def _get_client_key(self, request: Request) -> str:
        user_id = request.headers.get("x-user-id")
        if user_id:
            return f"user:{user_id}"
        xff = request.headers.get("x-forwarded-for")
        if xff:
            # Take first IP in the list
            return f"ip:{xff.split(',')[0].strip()}"
        client = request.client
        return f"ip:{client.host if client else 'unknown'}"

    def _get_redis_key(self, client_key: str) -> str:
        return f"rate_limit:{client_key}"

    def _refill(self, tokens: float, last_refill: float, now: float) -> float:
        elapsed = max(0.0, now - last_refill)
        refill = (elapsed / self.refill_time_window) * self.capacity
        return min(self.capacity, tokens + refill)

    async def _check_rate_limit_redis(self, client_key: str) -> Optional[bool]:
        """
        Returns True if allowed, False if limited, None if Redis could not answer.
        """
        try:
            key = self._get_redis_key(client_key)
            now = time()

            bucket_data = self._redis.get(key)
            if bucket_data:
                data = json.loads(bucket_data)
                tokens = float(data.get("tokens", 0))
                last_refill = float(data.get("last_refill", now))
            else:
                tokens = float(self.capacity)
                last_refill = now

            tokens = self._refill(tokens, last_refill, now)
            if tokens < 1.0:
                return False

            # TTL slightly longer than a full refill
            self._redis.setex(
                key,
                int(self.refill_time_window) + 10,
                json.dumps({"tokens": tokens - 1.0, "last_refill": now}),
            )
            return True

        except redis.RedisError as e:
            logger.warning(f"Redis rate limit check failed: {e}. Falling back to in-memory.")
            return None

    async def _check_rate_limit_memory(self, client_key: str) -> bool:
        now = time()
        tokens, last_refill = self._buckets.get(client_key, (self.capacity, now))
        tokens = self._refill(tokens, last_refill, now)

        if tokens < 1.0:
            return False

        self._buckets[client_key] = (tokens - 1.0, now)
        return True

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        client_key = self._get_client_key(request)

        allowed = None
        if self._redis is not None:
            allowed = await self._check_rate_limit_redis(client_key)
        if allowed is None:
            allowed = await self._check_rate_limit_memory(client_key)

        if not allowed:
            return JSONResponse(
                status_code=429,
                content={
                    "ok": False,
                    "data": {},
                    "error": "RATE_LIMITED",
                    "message": "Rate limit exceeded. Try again shortly."
                },
            )

        return await call_next(request)
