from __future__ import annotations

import threading
import time
import uuid
from typing import Any, Protocol

from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from redis import Redis
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from educrm.context import get_correlation_id
from educrm.core.config import Settings, get_settings
from educrm.metrics import observe_rate_limited


WINDOW_SECONDS = 60


class RateLimitStore(Protocol):
    def hit(self, key: str, window_seconds: int) -> tuple[int, int]:
        """Count one hit on ``key`` and return ``(count_in_window, seconds_until_reset)``."""
        ...

    def clear(self) -> None:
        ...


class InMemoryRateLimitStore:
    """Fixed-window counters for a single process.

    Expired keys are swept at most once per window, on the next hit after it ends.
    """

    def __init__(self, clock: Any = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._counters: dict[str, tuple[int, float]] = {}
        self._next_sweep = 0.0

    def hit(self, key: str, window_seconds: int) -> tuple[int, int]:
        now = self._clock()
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)
                self._next_sweep = now + window_seconds
            count, expires_at = self._counters.get(key, (0, 0.0))
            if expires_at <= now:
                count, expires_at = 0, now + window_seconds
            count += 1
            self._counters[key] = (count, expires_at)
        return count, max(1, int(round(expires_at - now)))

    def _sweep(self, now: float) -> None:
        expired = [key for key, (_, expires_at) in self._counters.items() if expires_at <= now]
        for key in expired:
            del self._counters[key]

    def clear(self) -> None:
        with self._lock:
            self._counters.clear()


class RedisRateLimitStore:
    def __init__(self, redis: Redis, prefix: str = "educrm:rate_limit") -> None:
        self.redis = redis
        self.prefix = prefix

    def hit(self, key: str, window_seconds: int) -> tuple[int, int]:
        full_key = f"{self.prefix}:{key}"
        pipe = self.redis.pipeline()
        pipe.incr(full_key, 1)
        pipe.ttl(full_key)
        count, ttl = pipe.execute()

        if ttl is None or ttl < 0:
            self.redis.expire(full_key, window_seconds)
            ttl = window_seconds
        return int(count), int(ttl)

    def clear(self) -> None:
        for key in self.redis.scan_iter(match=f"{self.prefix}:*"):
            self.redis.delete(key)


def build_rate_limit_store(settings: Settings) -> RateLimitStore:
    if settings.rate_limit_backend.lower() == "redis":
        return RedisRateLimitStore(Redis.from_url(settings.redis_url))
    return InMemoryRateLimitStore()


class CrmMutationRateLimitMiddleware(BaseHTTPMiddleware):
    mutating_methods = {"POST", "PUT", "PATCH", "DELETE"}

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled:
            return await call_next(request)

        path = request.url.path
        if not path.startswith("/api/crm") or request.method.upper() not in self.mutating_methods:
            return await call_next(request)

        store: RateLimitStore | None = getattr(request.app.state, "rate_limit_store", None)
        if store is None:
            return await call_next(request)

        user_id = _resolve_user_id(request)
        route_group = _resolve_route_group(path)
        count, retry_after = store.hit(f"{user_id}:{route_group}", WINDOW_SECONDS)
        if count <= settings.rate_limit_mutations_per_minute:
            return await call_next(request)

        observe_rate_limited(route_group)
        correlation_id = (
            get_correlation_id()
            or getattr(request.state, "correlation_id", None)
            or request.headers.get("x-correlation-id")
            or str(uuid.uuid4())
        )
        response = JSONResponse(
            status_code=429,
            content={
                "code": "rate_limited",
                "message": "Too many requests",
                "details": {"route_group": route_group},
                "correlation_id": correlation_id,
            },
        )
        response.headers["Retry-After"] = str(retry_after)
        response.headers["X-Correlation-Id"] = correlation_id
        return response


def _resolve_route_group(path: str) -> str:
    parts = [part for part in path.split("/") if part]
    if len(parts) < 3:
        return "crm"
    return parts[2]


def _resolve_user_id(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""
    if not token:
        return "anonymous"

    settings = get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return "anonymous"

    subject = payload.get("sub")
    if subject is None:
        return "anonymous"
    return str(subject)
