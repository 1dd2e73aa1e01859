"""HTTP middleware for SessionGuard."""

from sessionguard.middleware.rate_limit import (
    RateLimitMiddleware,
    get_rate_limiter,
    rate_limit_cleanup_loop,
)
from sessionguard.middleware.security_headers import SecurityHeadersMiddleware

__all__ = [
    "RateLimitMiddleware",
    "SecurityHeadersMiddleware",
    "get_rate_limiter",
    "rate_limit_cleanup_loop",
]
