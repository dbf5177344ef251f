"""Per-client rate limiting for the login endpoints using a Redis sliding window."""

import logging
import time
from typing import Callable

import redis.asyncio as redis
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from beout.config import Settings

logger = logging.getLogger(__name__)

# Unauthenticated endpoints that start, finish or poll a login
AUTH_PATH_PREFIXES = ("/oauth/", "/mobile/", "/exchange-mobile-token", "/auth/")


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding window rate limiter keyed by client IP."""

    def __init__(self, app, settings: Settings, redis_client: redis.Redis | None = None) -> None:
        super().__init__(app)
        self._max_requests = settings.rate_limit_per_minute
        self._window_seconds = 60
        self._enabled = settings.rate_limit_enabled
        self._prefix = settings.api_prefix
        self._redis = redis_client
        self._redis_url = settings.redis_url

    async def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(self._redis_url, decode_responses=True)
        return self._redis

    def _is_limited_path(self, path: str) -> bool:
        if self._prefix:
            if not path.startswith(self._prefix):
                return False
            path = path[len(self._prefix):]
        return path.startswith(AUTH_PATH_PREFIXES)

    def _client_identifier(self, request: Request) -> str | None:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return f"ip:{forwarded.split(',')[0].strip()}"
        if request.client:
            return f"ip:{request.client.host}"
        return None

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self._enabled or not self._is_limited_path(request.url.path):
            return await call_next(request)

        identifier = self._client_identifier(request)
        if not identifier:
            return await call_next(request)

        try:
            r = await self._get_redis()
            key = f"beout:ratelimit:{identifier}"
            now = time.time()
            window_start = now - self._window_seconds

            pipe = r.pipeline()
            pipe.zremrangebyscore(key, 0, window_start)
            pipe.zcard(key)
            pipe.zadd(key, {str(now): now})
            pipe.expire(key, self._window_seconds)
            results = await pipe.execute()

            request_count = results[1]
        except Exception as e:
            # Redis down: let the request through
            logger.warning("Rate limit Redis error: %s", e)
            return await call_next(request)

        if request_count >= self._max_requests:
            return JSONResponse(
                status_code=429,
                content={"detail": "Too many sign-in attempts. Try again later.", "error": "rate_limited"},
                headers={
                    "Retry-After": str(self._window_seconds),
                    "X-RateLimit-Limit": str(self._max_requests),
                    "X-RateLimit-Remaining": "0",
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self._max_requests)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self._max_requests - request_count - 1))
        return response
