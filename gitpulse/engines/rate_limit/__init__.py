"""Rate limiting engine: token bucket and adaptive limiter, no DB access."""

from gitpulse.engines.rate_limit.adaptive_limiter import (
    AdaptiveRateLimiter,
    RateLimiterConfig,
    RateLimiterMetrics,
    RateLimiterRegistry,
    is_rate_limit_error,
    retry_after_seconds,
)
from gitpulse.engines.rate_limit.errors import (
    CircuitOpenError,
    RateLimitConfigError,
    TokenUnavailableError,
)
from gitpulse.engines.rate_limit.token_bucket import TokenBucket, TokenBucketConfig

__all__ = [
    "AdaptiveRateLimiter",
    "CircuitOpenError",
    "RateLimitConfigError",
    "RateLimiterConfig",
    "RateLimiterMetrics",
    "RateLimiterRegistry",
    "TokenBucket",
    "TokenBucketConfig",
    "TokenUnavailableError",
    "is_rate_limit_error",
    "retry_after_seconds",
]
