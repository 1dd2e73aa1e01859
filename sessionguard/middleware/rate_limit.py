"""Per-IP request rate limiting for the auth endpoints."""

import asyncio
import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from sessionguard.core.request_utils import get_client_ip
from sessionguard.services.errors import RateLimited

logger = logging.getLogger(__name__)


@dataclass
class PathRateLimitConfig:
    """Limits for one group of paths."""

    requests_per_minute: int = 60
    requests_per_hour: int = 1000
    burst_size: int = 10


@dataclass
class RateLimitBucket:
    tokens: float = 10.0
    last_update: float = field(default_factory=time.monotonic)
    minute_requests: list[float] = field(default_factory=list)
    hour_requests: list[float] = field(default_factory=list)


@dataclass
class RateLimitDecision:
    allowed: bool
    headers: dict[str, str]
    retry_after: int = 0


class RateLimiter:
    """In-memory sliding-window limiter with a token bucket for bursts.

    Credential endpoints get tight limits so password guessing is slowed
    down before the failed-login lockout even engages. State is per process.
    """

    _instance: Optional["RateLimiter"] = None
    _instance_lock: threading.Lock = threading.Lock()

    def __init__(self, default_requests_per_minute: int = 100) -> None:
        self._buckets: dict[str, RateLimitBucket] = defaultdict(RateLimitBucket)
        self._lock = asyncio.Lock()

        self._path_configs: dict[str, PathRateLimitConfig] = {
            "/auth/login": PathRateLimitConfig(
                requests_per_minute=10, requests_per_hour=100, burst_size=5
            ),
            "/auth/register": PathRateLimitConfig(
                requests_per_minute=5, requests_per_hour=30, burst_size=3
            ),
            "/auth/refresh": PathRateLimitConfig(
                requests_per_minute=30, requests_per_hour=600, burst_size=10
            ),
        }
        self._default_config = PathRateLimitConfig(
            requests_per_minute=default_requests_per_minute,
            requests_per_hour=default_requests_per_minute * 20,
            burst_size=max(1, default_requests_per_minute // 5),
        )

    @classmethod
    def get_instance(cls) -> "RateLimiter":
        """Get the singleton instance (thread-safe)."""
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def configure_default(self, requests_per_minute: int) -> None:
        self._default_config = PathRateLimitConfig(
            requests_per_minute=requests_per_minute,
            requests_per_hour=requests_per_minute * 20,
            burst_size=max(1, requests_per_minute // 5),
        )

    def set_path_config(self, prefix: str, config: PathRateLimitConfig) -> None:
        self._path_configs[prefix] = config

    def _match_prefix(self, path: str) -> str | None:
        for prefix in self._path_configs:
            if path.startswith(prefix):
                return prefix
        return None

    def get_config_for_path(self, path: str) -> PathRateLimitConfig:
        prefix = self._match_prefix(path)
        return self._path_configs[prefix] if prefix else self._default_config

    async def check(self, client_ip: str, path: str) -> RateLimitDecision:
        config = self.get_config_for_path(path)
        bucket_key = f"{client_ip}:{self._match_prefix(path) or 'default'}"

        async with self._lock:
            bucket = self._buckets[bucket_key]
            now = time.monotonic()
            bucket.minute_requests = [ts for ts in bucket.minute_requests if ts > now - 60]
            bucket.hour_requests = [ts for ts in bucket.hour_requests if ts > now - 3600]

            minute_remaining = config.requests_per_minute - len(bucket.minute_requests)
            hour_remaining = config.requests_per_hour - len(bucket.hour_requests)
            headers = {
                "X-RateLimit-Limit": str(config.requests_per_minute),
                "X-RateLimit-Remaining": str(max(0, minute_remaining - 1)),
            }

            if minute_remaining <= 0:
                retry_after = max(1, int(60 - (now - min(bucket.minute_requests))))
                return RateLimitDecision(False, headers, retry_after)
            if hour_remaining <= 0:
                retry_after = max(1, int(3600 - (now - min(bucket.hour_requests))))
                return RateLimitDecision(False, headers, retry_after)

            refill_rate = config.requests_per_minute / 60.0
            bucket.tokens = min(
                config.burst_size, bucket.tokens + (now - bucket.last_update) * refill_rate
            )
            bucket.last_update = now
            if bucket.tokens < 1.0:
                return RateLimitDecision(False, headers, 1)

            bucket.tokens -= 1.0
            bucket.minute_requests.append(now)
            bucket.hour_requests.append(now)
            return RateLimitDecision(True, headers)

    async def reset(self, client_ip: str | None = None) -> None:
        async with self._lock:
            if client_ip:
                for key in [k for k in self._buckets if k.startswith(f"{client_ip}:")]:
                    del self._buckets[key]
            else:
                self._buckets.clear()

    async def cleanup_inactive_buckets(self, inactive_seconds: int = 86400) -> int:
        """Drop buckets untouched for ``inactive_seconds``."""
        async with self._lock:
            cutoff = time.monotonic() - inactive_seconds
            stale = [
                key
                for key, bucket in self._buckets.items()
                if bucket.last_update < cutoff
                and all(ts < cutoff for ts in bucket.hour_requests)
            ]
            for key in stale:
                del self._buckets[key]
            if stale:
                logger.info(f"Cleaned up {len(stale)} inactive rate limit buckets")
            return len(stale)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Reject over-limit requests with 429 and a Retry-After header."""

    def __init__(
        self,
        app: ASGIApp,
        requests_per_minute: int = 100,
        exclude_paths: list[str] | None = None,
        enabled: bool = True,
    ) -> None:
        super().__init__(app)
        self.exclude_paths = exclude_paths or ["/health", "/docs", "/redoc", "/openapi.json"]
        self.enabled = enabled
        self.rate_limiter = RateLimiter.get_instance()
        self.rate_limiter.configure_default(requests_per_minute)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if not self.enabled or any(path.startswith(p) for p in self.exclude_paths):
            return await call_next(request)

        client_ip = get_client_ip(request) or "unknown"
        decision = await self.rate_limiter.check(client_ip, path)

        if not decision.allowed:
            logger.warning(f"Rate limit exceeded for {client_ip} on {path}")
            error = RateLimited(retry_after=decision.retry_after)
            return JSONResponse(
                status_code=error.status_code,
                content=error.to_dict(),
                headers={**decision.headers, **error.headers},
            )

        response = await call_next(request)
        for key, value in decision.headers.items():
            response.headers[key] = value
        return response


def get_rate_limiter() -> RateLimiter:
    return RateLimiter.get_instance()


async def rate_limit_cleanup_loop(interval_seconds: int = 3600) -> None:
    """Periodically evict idle buckets so memory stays bounded."""
    rate_limiter = get_rate_limiter()
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            await rate_limiter.cleanup_inactive_buckets(inactive_seconds=86400)
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.warning(f"Rate limiter cleanup error: {e}")
